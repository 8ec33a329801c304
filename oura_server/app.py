import os
import logging

from flask import Flask, jsonify
from flask_cors import CORS

from .dashboard import EXTENSION_KEY, DashboardController, HttpProxyFetcher, LocalProxyFetcher, dashboard_bp
from .errors import register_error_handlers
from .oura_client import DEFAULT_OURA_API_BASE, OuraClient
from .oura_proxy import oura_bp
from .snapshot_store import DEFAULT_COLLECTION, FirestoreSnapshotStore

# ---------------- Logging ----------------
logging.basicConfig(
    level=getattr(logging, (os.getenv("LOG_LEVEL") or "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("oura-dashboard")


# ---------------- Config / Keys ----------------
def _float_or_none(raw):
    try:
        return float(raw) if raw not in (None, "") else None
    except ValueError:
        return None


def load_config():
    """Read settings from the environment once, at startup."""
    return {
        "OURA_ACCESS_TOKEN": os.getenv("OURA_PERSONAL_ACCESS_TOKEN"),
        "OURA_API_BASE": (os.getenv("OURA_API_BASE") or DEFAULT_OURA_API_BASE).rstrip("/"),
        # unset -> no timeout, requests' own default
        "HTTP_TIMEOUT_SECONDS": _float_or_none(os.getenv("HTTP_TIMEOUT_SECONDS")),
        "FIRESTORE_PROJECT_ID": os.getenv("FIRESTORE_PROJECT_ID"),
        "FIRESTORE_COLLECTION": os.getenv("FIRESTORE_COLLECTION") or DEFAULT_COLLECTION,
        "FIRESTORE_API_KEY": os.getenv("FIRESTORE_API_KEY"),
        "FIRESTORE_ID_TOKEN": os.getenv("FIRESTORE_ID_TOKEN"),
        "DASHBOARD_PROXY_URL": os.getenv("DASHBOARD_PROXY_URL"),
    }


def build_snapshot_store(cfg):
    if not cfg.get("FIRESTORE_PROJECT_ID"):
        return None
    return FirestoreSnapshotStore(
        cfg["FIRESTORE_PROJECT_ID"],
        collection=cfg.get("FIRESTORE_COLLECTION") or DEFAULT_COLLECTION,
        api_key=cfg.get("FIRESTORE_API_KEY"),
        id_token=cfg.get("FIRESTORE_ID_TOKEN"),
        timeout=cfg.get("HTTP_TIMEOUT_SECONDS"),
    )


def build_fetcher(cfg):
    if cfg.get("DASHBOARD_PROXY_URL"):
        return HttpProxyFetcher(cfg["DASHBOARD_PROXY_URL"], timeout=cfg.get("HTTP_TIMEOUT_SECONDS"))
    client = OuraClient(
        cfg.get("OURA_ACCESS_TOKEN"),
        base_url=cfg.get("OURA_API_BASE") or DEFAULT_OURA_API_BASE,
        timeout=cfg.get("HTTP_TIMEOUT_SECONDS"),
    )
    return LocalProxyFetcher(client)


def create_app(config=None, *, snapshot_store=None, fetch_range=None):
    """
    Build the Flask app. ``config`` overrides values from ``load_config()``;
    ``snapshot_store`` and ``fetch_range`` replace the dashboard's collaborators.
    """
    app = Flask(__name__)
    app.config.update(load_config())
    if config:
        app.config.update(config)

    CORS(app, resources={r"/api/*": {"origins": "*"}})
    register_error_handlers(app)
    app.register_blueprint(oura_bp)
    app.register_blueprint(dashboard_bp)

    app.extensions[EXTENSION_KEY] = DashboardController(
        fetch_range or build_fetcher(app.config),
        snapshot_store=snapshot_store if snapshot_store is not None else build_snapshot_store(app.config),
    )

    logger.info(f"OURA token present? {bool(app.config.get('OURA_ACCESS_TOKEN'))}")
    if not app.config.get("OURA_ACCESS_TOKEN"):
        logger.warning("Missing OURA_PERSONAL_ACCESS_TOKEN; /api/oura/sleep will answer 500.")

    # ---------- Health ----------
    @app.route("/health", methods=["GET"])
    def health_check():
        controller = app.extensions[EXTENSION_KEY]
        return jsonify({
            "status": "ok",
            "services": {
                "oura_token": "present" if app.config.get("OURA_ACCESS_TOKEN") else "absent",
                "oura_api": app.config.get("OURA_API_BASE"),
                "snapshot_store": "configured" if controller.snapshot_store is not None else "disabled",
            },
            "endpoints": [
                "/ (GET)",
                "/refresh (POST)",
                "/snapshot (POST)",
                "/api/oura/sleep (GET)",
                "/health (GET)"
            ]
        })

    return app


# ===================== Main =====================

def main():
    port = int(os.getenv("PORT", 5000))
    debug_mode = os.getenv("DEBUG", "false").lower() == "true"
    app = create_app()
    logger.info(f"Starting server on port {port} in {'debug' if debug_mode else 'production'} mode")
    try:
        app.run(host="0.0.0.0", port=port, debug=debug_mode)
    finally:
        app.extensions[EXTENSION_KEY].close()


if __name__ == "__main__":
    main()
