import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from html import escape as _escape
from typing import Callable, Optional, Tuple

import requests
from flask import Blueprint, current_app, redirect, request, url_for
from jinja2 import Template

from .errors import OuraProxyError
from .matcher import pick_for_day
from .metrics import derive_metrics, parse_timestamp
from .oura_client import OuraClient
from .oura_proxy import fetch_sleep_payload
from .snapshot_store import SnapshotStoreError

logger = logging.getLogger("oura-dashboard.view")

dashboard_bp = Blueprint("dashboard", __name__)

EXTENSION_KEY = "oura_dashboard"


# ----------------------------- Fetchers -----------------------------

class LocalProxyFetcher:
    """Runs the proxy logic in-process; returns exactly what the endpoint would send."""

    def __init__(self, client: OuraClient):
        self.client = client

    def __call__(self, start: str, end: str) -> dict:
        try:
            return fetch_sleep_payload(self.client, start, end)
        except OuraProxyError as err:
            return err.to_dict()


class HttpProxyFetcher:
    """Calls a running ``/api/oura/sleep`` endpoint over HTTP."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.url = base_url.rstrip("/") + "/api/oura/sleep"
        self.timeout = timeout

    def __call__(self, start: str, end: str) -> dict:
        res = requests.get(self.url, params={"start": start, "end": end}, timeout=self.timeout)
        # error responses carry a JSON body too
        return res.json()


# ----------------------------- Controller -----------------------------

@dataclass
class SaveResult:
    ok: bool
    document_id: Optional[str] = None
    created_at: Optional[str] = None
    error: Optional[str] = None


class DashboardController:
    """
    Transient state behind the dashboard page: the selected day, the last
    proxy response, a loading flag and the last-updated time. Nothing here is
    persisted; a restart starts from scratch.
    """

    def __init__(self, fetch_range: Callable[[str, str], dict], snapshot_store=None,
                 clock: Callable[[], datetime] = datetime.now):
        self.fetch_range = fetch_range
        self.snapshot_store = snapshot_store
        self.clock = clock
        self.date = clock().date().isoformat()
        self.response: Optional[dict] = None
        self.loading = False
        self.updated_at = ""
        self.error: Optional[str] = None
        self.notice: Optional[str] = None
        self._range: Optional[Tuple[str, str]] = None
        self._response_version = 0
        self._metrics_key = None
        self._metrics = None
        self._executor: Optional[ThreadPoolExecutor] = None

    def select_date(self, day: str) -> None:
        self.date = date.fromisoformat(day).isoformat()

    def lookback_range(self) -> Tuple[str, str]:
        # sessions that started the previous evening live in yesterday's range
        day = date.fromisoformat(self.date)
        return (day - timedelta(days=1)).isoformat(), day.isoformat()

    def refresh(self) -> Optional[dict]:
        start, end = self.lookback_range()
        self.loading = True
        try:
            resp = self.fetch_range(start, end)
            self.response = resp
            self._range = (start, end)
            self._response_version += 1
            self.error = resp.get("error") if isinstance(resp, dict) else None
            if self.error:
                logger.warning(f"Refresh {start}..{end} returned error: {self.error}")
        except Exception as e:
            logger.error("Dashboard refresh failed", exc_info=True)
            self.error = f"Refresh failed: {e}"
        finally:
            self.updated_at = self.clock().strftime("%H:%M:%S")
            self.loading = False
        return self.response

    @property
    def metrics(self) -> dict:
        key = (self._response_version, self.date)
        if key != self._metrics_key:
            daily, sleep = pick_for_day(self.response or {}, self.date)
            self._metrics = derive_metrics(daily, sleep)
            self._metrics_key = key
        return self._metrics

    # ---- Snapshots ----

    def _pending_snapshot(self):
        if self.snapshot_store is None:
            return None, SaveResult(False, error="Snapshot store is not configured")
        if self.response is None or self._range is None:
            return None, SaveResult(False, error="Nothing to save yet; refresh first")
        if isinstance(self.response, dict) and self.response.get("error"):
            return None, SaveResult(False, error="Last refresh failed; nothing to save")
        start, end = self._range
        return (self.snapshot_store, start, end, self.response), None

    @staticmethod
    def _write(store, start, end, payload) -> SaveResult:
        try:
            saved = store.append(start, end, payload)
        except SnapshotStoreError as e:
            logger.warning(f"Snapshot save failed: {e}")
            return SaveResult(False, error=str(e))
        return SaveResult(True, document_id=saved.get("id"), created_at=saved.get("createdAt"))

    def save_snapshot(self) -> SaveResult:
        pending, rejected = self._pending_snapshot()
        if rejected:
            return rejected
        return self._write(*pending)

    def save_snapshot_async(self) -> "Future[SaveResult]":
        """Same as ``save_snapshot`` but on a background worker; state is captured now."""
        pending, rejected = self._pending_snapshot()
        if rejected:
            fut = Future()
            fut.set_result(rejected)
            return fut
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1)
        return self._executor.submit(self._write, *pending)

    def close(self) -> None:
        """Stop the snapshot worker; queued saves still finish. A later async save starts a new one."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


def get_controller() -> DashboardController:
    return current_app.extensions[EXTENSION_KEY]


# ----------------------------- Formatting -----------------------------

def fmt_hm(hours) -> str:
    h = hours if isinstance(hours, (int, float)) and math.isfinite(hours) else 0.0
    whole = math.floor(h)
    return f"{whole}h {int(math.floor((h - whole) * 60 + 0.5))}m"


def fmt_clock(iso) -> str:
    ts = parse_timestamp(iso)
    return ts.strftime("%H:%M") if ts else "—"


STAGE_COLORS = (
    ("Awake", "awakePct", "#6EA7FF"),
    ("REM", "remPct", "#547BFF"),
    ("Light", "lightPct", "#8E62FF"),
    ("Deep", "deepPct", "#C48BFF"),
)


def stacked_bar_segments(metrics: dict):
    """Clamp each share to [0, 100] and rescale so the bar always fills to 100%."""
    def clamp(n):
        return max(0.0, min(100.0, n)) if isinstance(n, (int, float)) and math.isfinite(n) else 0.0

    values = [clamp(metrics.get(key)) for _, key, _ in STAGE_COLORS]
    total = sum(values)
    scale = 100.0 / total if total > 0 else 0.0
    return [
        {"label": label, "color": color, "width": round(v * scale, 2)}
        for (label, _, color), v in zip(STAGE_COLORS, values)
    ]


def _stacked_bar_html(metrics: dict) -> str:
    spans = "".join(
        f'<span title="{_escape(s["label"])}" style="background:{s["color"]};width:{s["width"]}%"></span>'
        for s in stacked_bar_segments(metrics)
    )
    return f'<div class="bar">{spans}</div>'


PAGE_TEMPLATE = Template(r"""
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Oura Overview</title>
  <style>
    :root { --ink:#18181b; --muted:#71717a; --line:#e4e4e7; --panel:#ffffffcc; }
    body { margin:0; font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Arial, sans-serif; color: var(--ink);
           background: radial-gradient(1000px 600px at 10% -10%, rgba(99,102,241,0.25), transparent),
                       radial-gradient(1000px 600px at 90% -10%, rgba(56,189,248,0.25), transparent); }
    .wrap { max-width: 1100px; margin: 0 auto; padding: 32px 20px; }
    h1 { font-size: 34px; margin: 0; color: #4f46e5; }
    .head { display:flex; justify-content:space-between; align-items:flex-end; gap:16px; margin-bottom:28px; flex-wrap:wrap; }
    .grid { display:grid; gap:16px; margin-bottom:20px; }
    .g4 { grid-template-columns: repeat(4, minmax(0, 1fr)); }
    .g2 { grid-template-columns: repeat(2, minmax(0, 1fr)); }
    .card { border:1px solid var(--line); border-radius: 24px; background: var(--panel); padding: 20px; }
    .label { font-size: 12px; color: var(--muted); }
    .value { font-size: 26px; font-weight: 600; }
    .sub { font-size: 12px; color: var(--muted); }
    .meter { height: 8px; border-radius: 999px; background: var(--line); overflow: hidden; }
    .meter > div { height: 100%; background: linear-gradient(90deg, #6366f1, #0ea5e9); }
    .bar { display:flex; height: 14px; border-radius: 999px; overflow: hidden; background: var(--line); }
    .bar > span { height: 100%; display:block; }
    .legend { display:flex; gap:12px; font-size:12px; color: var(--muted); margin-top: 12px; }
    .legend i { display:inline-block; width:12px; height:12px; border-radius:3px; margin-right:4px; vertical-align:middle; }
    .msg { padding: 10px 14px; border-radius: 12px; margin-bottom: 16px; font-size: 13px; }
    .msg.err { background:#fee2e2; color:#991b1b; }
    .msg.ok { background:#dcfce7; color:#166534; }
    button { border:0; border-radius: 16px; padding: 8px 16px; background:#000; color:#fff; cursor:pointer; }
    button[disabled] { opacity: .6; cursor: default; }
    .foot { margin-top: 32px; font-size: 12px; color: var(--muted); }
  </style>
</head>
<body>
<div class="wrap">

  <div class="head">
    <h1>Oura Overview</h1>
    <div style="display:flex;gap:8px;align-items:center;">
      <form method="post" action="{{ refresh_url }}" style="display:flex;gap:8px;align-items:center;">
        <input type="date" name="date" value="{{ date }}">
        <button type="submit" {% if loading %}disabled{% endif %}>Refresh</button>
      </form>
      <form method="post" action="{{ snapshot_url }}">
        <button type="submit" {% if not can_save %}disabled{% endif %}>Save snapshot</button>
      </form>
    </div>
  </div>

  {% if error %}<div class="msg err">{{ error }}</div>{% endif %}
  {% if notice %}<div class="msg {{ 'ok' if notice_ok else 'err' }}">{{ notice }}</div>{% endif %}

  <!-- Summary -->
  <div class="grid g4">
    <div class="card"><div class="label">{{ date_label }}</div><div class="value">{{ score }}</div><div class="sub">Sleep score /100</div></div>
    <div class="card"><div class="label">Bedtime</div><div class="value">{{ bedtime }}</div></div>
    <div class="card"><div class="label">Wake Time</div><div class="value">{{ waketime }}</div></div>
    <div class="card"><div class="label">Total Sleep</div><div class="value">{{ total }}</div></div>
  </div>

  <!-- Efficiency / latency -->
  <div class="grid g2">
    <div class="card">
      <div style="display:flex;justify-content:space-between;align-items:center;margin-bottom:12px;">
        <div class="label">Sleep Efficiency</div><div class="value">{{ "%.1f"|format(m.efficiency) }}%</div>
      </div>
      <div class="meter"><div style="width:{{ m.efficiency }}%"></div></div>
    </div>
    <div class="card">
      <div style="display:flex;justify-content:space-between;align-items:center;margin-bottom:12px;">
        <div class="label">Sleep Latency</div><div class="value">{{ latency }}</div>
      </div>
      <div class="sub">Time from getting into bed to falling asleep</div>
    </div>
  </div>

  <!-- Stages -->
  <div class="grid g4">
    {% for s in stages %}
    <div class="card"><div class="label">{{ s.label }}</div><div class="value">{{ s.value }}</div>{% if s.sub %}<div class="sub">{{ s.sub }}</div>{% endif %}</div>
    {% endfor %}
  </div>

  <!-- Distribution -->
  <div class="card">
    <div class="label" style="margin-bottom:8px;">Sleep Stages Distribution</div>
    {{ bar_html | safe }}
    <div class="legend">
      {% for label, _, color in legend %}<span><i style="background:{{ color }}"></i>{{ label }}</span>{% endfor %}
    </div>
  </div>

  <p class="foot">
    Oura reports minutes or seconds depending on the endpoint; every duration here is normalized to hours.
    {% if updated_at %}Last updated {{ updated_at }}.{% endif %}
  </p>
</div>
</body>
</html>
""", autoescape=True)


def render_dashboard(controller: DashboardController, notice_ok: bool = False) -> str:
    m = controller.metrics
    latency = f"{m['latencyMin']}m" if m["latencyMin"] is not None else "—"
    score = m["score"]
    if isinstance(score, float) and score.is_integer():
        score = int(score)
    stages = [
        {"label": "Deep Sleep", "value": fmt_hm(m["deep"])},
        {"label": "REM Sleep", "value": fmt_hm(m["rem"])},
        {"label": "Light Sleep", "value": fmt_hm(m["light"])},
        {"label": "Awake", "value": fmt_hm(m["awake"]),
         "sub": "estimated from time in bed" if m.get("awakeEstimated") else ""},
    ]
    return PAGE_TEMPLATE.render(
        date=controller.date,
        date_label=controller.date.replace("-", "/"),
        refresh_url=url_for("dashboard.refresh"),
        snapshot_url=url_for("dashboard.snapshot"),
        loading=controller.loading,
        can_save=controller.snapshot_store is not None and controller.response is not None,
        error=controller.error,
        notice=controller.notice,
        notice_ok=notice_ok,
        score=score if score is not None else "--",
        bedtime=fmt_clock(m["bedtime"]),
        waketime=fmt_clock(m["waketime"]),
        total=fmt_hm(m["total"]),
        m=m,
        latency=latency,
        stages=stages,
        bar_html=_stacked_bar_html(m),
        legend=STAGE_COLORS,
        updated_at=controller.updated_at,
    )


# ----------------------------- Routes -----------------------------

@dashboard_bp.route("/", methods=["GET"])
def index():
    controller = get_controller()
    controller.notice = None
    day = request.args.get("date")
    if day:
        try:
            controller.select_date(day)
        except ValueError:
            # shown for this response only
            controller.notice = f"Invalid date: {day}"
    return render_dashboard(controller), 200


@dashboard_bp.route("/refresh", methods=["POST"])
def refresh():
    controller = get_controller()
    day = request.form.get("date")
    if day:
        try:
            controller.select_date(day)
        except ValueError:
            controller.notice = f"Invalid date: {day}"
            return render_dashboard(controller), 200
    controller.refresh()
    return redirect(url_for("dashboard.index"))


@dashboard_bp.route("/snapshot", methods=["POST"])
def snapshot():
    controller = get_controller()
    result = controller.save_snapshot()
    if result.ok:
        controller.notice = f"Snapshot saved ({result.document_id})"
    else:
        controller.notice = result.error
    return render_dashboard(controller, notice_ok=result.ok), 200
