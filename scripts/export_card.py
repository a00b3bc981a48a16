"""
scripts/export_card.py
======================
Render a template with up to three game records and save (or share) the image.

Usage:
    python scripts/export_card.py --template templates/matchday.json --records games.json
    python scripts/export_card.py --template t.json --records r.json --format jpeg --scale 3
    python scripts/export_card.py --template t.json --records r.json --mobile
"""

import argparse
import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gamecard.core.config import settings
from gamecard.core.errors import ExportError
from gamecard.core.http import close_http_clients, init_http_clients
from gamecard.data.models import Template
from gamecard.services.delivery import ClientInfo
from gamecard.services.events import ExportEvents, ProgressEvent, ResourceState, ResourceStatusEvent
from gamecard.services.export import ExportController


def _load_json(path: str):
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def _records(payload) -> list[dict]:
    if payload is None:
        return []
    if isinstance(payload, dict):
        payload = payload.get("records", [payload])
    return [dict(x) for x in payload if isinstance(x, dict)]


def _print_progress(percent: int, message: str) -> None:
    print(f"[{percent:3d}%] {message}")


def _print_event(event) -> None:
    if isinstance(event, ProgressEvent):
        _print_progress(event.percent, event.message)
        return
    if not isinstance(event, ResourceStatusEvent) or event.changed is None:
        return
    status = event.changed
    if status.state in (ResourceState.LOADED, ResourceState.ERROR):
        detail = status.size or status.error or ""
        print(f"       {status.state.value:<7} {status.identifier[:80]} {detail}")


async def export_card(
    *,
    template_path: str,
    records_path: str | None,
    out_dir: str | None,
    fmt: str | None,
    scale: float | None,
    mobile: bool,
    background: str | None,
    file_name: str | None,
) -> int:
    template = Template.model_validate(_load_json(template_path))
    records = _records(_load_json(records_path)) if records_path else []
    events = ExportEvents(_print_event)
    controller = ExportController(download_dir=out_dir or settings.download_dir)
    await init_http_clients()
    try:
        result = await controller.export(
            template,
            records,
            target_file_name=file_name,
            client=ClientInfo(force_mobile=mobile),
            scale=scale,
            format=fmt,
            background_image=background,
            events=events,
        )
    except ExportError as e:
        print(f"export failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        await close_http_clients()
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    print(f"export done method={result.method} file={result.location} bytes={result.size_bytes}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Export a game card image from a template")
    parser.add_argument("--template", required=True, help="Template JSON file")
    parser.add_argument("--records", default=None, help="JSON file with one record or a list of up to three")
    parser.add_argument("--out-dir", default=None, help="Download directory (defaults to DOWNLOAD_DIR)")
    parser.add_argument("--format", default=None, choices=["png", "jpeg", "jpg", "webp"], help="Output format")
    parser.add_argument("--scale", type=float, default=None, help="Pixel ratio (defaults to EXPORT_SCALE)")
    parser.add_argument("--file-name", default=None, help="Target file name; its extension picks the format")
    parser.add_argument("--background", default=None, help="Background image URL for placeholder templates")
    parser.add_argument(
        "--mobile",
        action="store_true",
        help="Deliver like a mobile client: share, then open, then download",
    )
    args = parser.parse_args()

    code = asyncio.run(
        export_card(
            template_path=args.template,
            records_path=args.records,
            out_dir=args.out_dir,
            fmt=args.format,
            scale=args.scale,
            mobile=args.mobile,
            background=args.background,
            file_name=args.file_name,
        )
    )
    raise SystemExit(code)


if __name__ == "__main__":
    main()
