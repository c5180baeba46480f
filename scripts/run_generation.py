from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from genstudio_api.app.models import GenerationRequest
from genstudio_api.app.runtime import build_runtime
from genstudio_api.app.settings import get_settings


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Submit one image or video generation and wait for the persisted outcome."
    )
    parser.add_argument("--mode", choices=("image", "video"), default="image")
    parser.add_argument("--prompt", required=True, help="Text prompt for the generation.")
    parser.add_argument("--size", default=None, help="Output size, e.g. 1024x1024 or 720x1280.")
    parser.add_argument("--quality", default=None, help="Image quality (image mode only).")
    parser.add_argument(
        "--seconds",
        type=int,
        default=None,
        help="Clip duration in seconds (video mode only).",
    )
    parser.add_argument(
        "--reference",
        type=Path,
        action="append",
        default=[],
        help="Reference image file; repeat for several (image mode only).",
    )
    parser.add_argument("--owner-id", default=None, help="History owner; defaults to settings.")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the final session snapshot as JSON.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log poll attempts and uploads.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    settings = get_settings()
    runtime = build_runtime(settings)
    runtime.storage.migrate()

    request = GenerationRequest(
        mode=args.mode,
        prompt=args.prompt,
        size=args.size,
        quality=args.quality,
        duration_seconds=args.seconds,
        reference_images=tuple(path.read_bytes() for path in args.reference),
    )
    controller = runtime.controller_for(args.owner_id or settings.default_owner_id)
    snapshot = controller.submit(request, wait=True)

    if args.json:
        print(json.dumps(snapshot.model_dump(mode="json"), indent=2))
        return

    print(f"State: {snapshot.state}")
    if snapshot.job_id:
        print(f"Job: {snapshot.job_id} (polls={snapshot.poll_attempts})")
    if snapshot.error:
        print(f"Error: {snapshot.error}")
    if snapshot.warning:
        print(f"Warning: {snapshot.warning}")
    if snapshot.result is not None:
        print(f"Media: {snapshot.result.media_url or '<inline payload>'}")
        if snapshot.result.revised_prompt:
            print(f"Revised prompt: {snapshot.result.revised_prompt}")
    if snapshot.record_id:
        print(f"History record: {snapshot.record_id}")


if __name__ == "__main__":
    main()
