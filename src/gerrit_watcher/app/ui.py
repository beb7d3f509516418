from __future__ import annotations

from collections.abc import Iterable, Sequence
from html import escape
from urllib.parse import quote

from .models import RunRecord

_STYLE = """
  <style>
    :root {
      --bg: #f3efe6;
      --panel: #fffaf0;
      --ink: #112433;
      --muted: #5c6b74;
      --line: #d7d1c3;
      --running: #0f8b8d;
      --passed: #136f63;
      --failed: #b00020;
      --aborted: #8a6d3b;
    }
    * { box-sizing: border-box; }
    body {
      margin: 0;
      min-height: 100vh;
      font-family: "IBM Plex Mono", monospace;
      color: var(--ink);
      background: var(--bg);
    }
    .wrap {
      max-width: 1100px;
      margin: 24px auto;
      padding: 0 16px 24px;
      display: grid;
      gap: 16px;
    }
    .hero, .card {
      background: var(--panel);
      border: 1px solid var(--line);
      border-radius: 16px;
      padding: 16px 20px;
    }
    .title { margin: 0; font-size: 1.6rem; }
    .sub { margin: 6px 0 0; color: var(--muted); }
    ul.runs { list-style: none; margin: 0; padding: 0; }
    ul.runs li {
      padding: 10px 0;
      border-bottom: 1px solid var(--line);
      display: grid;
      gap: 4px;
    }
    ul.runs li:last-child { border-bottom: none; }
    .revs { color: var(--muted); font-size: 0.85rem; }
    .status {
      font-weight: 700;
      text-transform: uppercase;
      font-size: 0.8rem;
    }
    .status-running { color: var(--running); }
    .status-passed { color: var(--passed); }
    .status-failed { color: var(--failed); }
    .status-aborted { color: var(--aborted); }
    .empty { color: var(--muted); }
  </style>
"""


def _page(title: str, subtitle: str, body: str) -> str:
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{escape(title)}</title>
{_STYLE}
</head>
<body>
  <main class="wrap">
    <section class="hero">
      <h1 class="title">{escape(title)}</h1>
      <p class="sub">{subtitle}</p>
    </section>
    <section class="card">
{body}
    </section>
  </main>
</body>
</html>
"""


def _render_run(record: RunRecord) -> str:
    status = escape(record.status)
    links = [f'<a href="/logs/{quote(record.log_path)}">log</a>']
    if record.url:
        links.insert(0, f'<a href="{escape(record.url)}">change</a>')
    started = record.started_at.strftime("%Y-%m-%d %H:%M:%S %Z") if record.started_at else "-"
    return (
        "      <li>\n"
        f'        <span class="status status-{status}">{status}</span>\n'
        f"        <strong>{escape(record.title)}</strong>\n"
        f'        <span class="revs">{escape(record.revision_under_test)} on '
        f"{escape(record.baseline_revision)} &middot; started {escape(started)}</span>\n"
        f"        <span>{' &middot; '.join(links)}</span>\n"
        "      </li>"
    )


def render_status_page(records: Sequence[RunRecord], *, app_name: str = "gerrit-watcher") -> str:
    """Render runs in the order given; callers pass the newest first."""
    if records:
        items = "\n".join(_render_run(record) for record in records)
        body = f'      <ul class="runs">\n{items}\n      </ul>'
    else:
        body = '      <p class="empty">No runs yet.</p>'
    running = sum(1 for record in records if record.status == "running")
    subtitle = (
        f"{len(records)} runs, {running} running &middot; "
        '<a href="/logs">browse logs</a>'
    )
    return _page(app_name, subtitle, body)


def render_log_index(names: Iterable[str], *, app_name: str = "gerrit-watcher") -> str:
    entries = [f'        <li><a href="/logs/{quote(name)}">{escape(name)}</a></li>' for name in names]
    if entries:
        body = '      <ul class="runs">\n' + "\n".join(entries) + "\n      </ul>"
    else:
        body = '      <p class="empty">No logs yet.</p>'
    return _page(f"{app_name} logs", '<a href="/">back to runs</a>', body)
