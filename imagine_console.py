"""Run a streaming imagine session from the terminal.

Starts one generation session against an admin backend, prints every
status/result notification, and stops after `--max-images` results or on
Ctrl-C. With `--save` each new image is stored in the local gallery using the
same fetcher and store the HTTP API uses.

Run: `python imagine_console.py "a red fox in snow" --admin-url http://127.0.0.1:8000`
"""
import argparse
import asyncio
import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from models.stream_models import StreamParams
from services.gallery_store import GalleryStore
from services.image_fetcher import FetchLimits, fetch_remote_image, parse_data_image
from services.imagine.orchestrator import ImagineStreamOrchestrator
from utils.errors import AppError
from utils.settings import load_settings

LOGGER = logging.getLogger("imagine_console")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream images from an imagine admin backend.")
    parser.add_argument("prompt", help="Prompt sent to every generation task")
    parser.add_argument("--admin-url", default=os.getenv("IMAGINE_ADMIN_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--base-url", default="", help="Base used to resolve relative image URLs")
    parser.add_argument("--api-key", default=os.getenv("IMAGINE_API_KEY", ""))
    parser.add_argument("--aspect-ratio", default="1:1")
    parser.add_argument("--concurrency", type=int, default=1)
    parser.add_argument("--transport", choices=("auto", "ws", "sse"), default="auto")
    parser.add_argument("--max-images", type=int, default=4, help="Stop after this many results (0 = no limit)")
    parser.add_argument("--save", action="store_true", help="Store every result in the gallery")
    return parser


async def _save_result(store: GalleryStore, url: str, prompt: str, limits: FetchLimits) -> None:
    try:
        if url.startswith("data:"):
            fetched = parse_data_image(url, max_bytes=limits.max_bytes)
        else:
            fetched = await fetch_remote_image(url, limits)
        saved = await store.save(
            fetched.data,
            fetched.ext,
            prompt=prompt,
            source="imagine",
            origin_key=fetched.origin_key,
        )
    except AppError as exc:
        print(f"  ! save failed ({exc.code}): {exc.message}")
        return
    marker = "duplicate" if saved.duplicated else "saved"
    print(f"  -> {marker} {saved.entry.path}")


async def run(args: argparse.Namespace) -> int:
    """Drive one session until it ends, the image limit is hit, or Ctrl-C."""
    finished = asyncio.Event()
    store: Optional[GalleryStore] = None
    limits = FetchLimits()
    if args.save:
        settings = load_settings()
        store = GalleryStore(settings.gallery_dir, settings.index_file)
        await store.ensure_store()
        limits = FetchLimits(
            timeout=settings.image_fetch_timeout,
            max_bytes=settings.image_fetch_max_bytes,
            max_redirects=settings.image_fetch_max_redirects,
        )

    pending_saves = []
    orchestrator: Optional[ImagineStreamOrchestrator] = None

    async def on_event(event: Dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "state":
            print(f"[state] {event['state']}" + (f" via {event['transport']}" if event.get("transport") else ""))
        elif kind == "status":
            print(f"[status] {event['text']}")
        elif kind == "error":
            print(f"[error{' (fatal)' if event.get('fatal') else ''}] {event['message']}")
        elif kind == "images":
            for image in event["images"]:
                url = image["url"]
                print(f"[image #{event['total']}] {url[:120]}")
                if store is not None:
                    pending_saves.append(asyncio.create_task(_save_result(store, url, args.prompt, limits)))
            if args.max_images and event["total"] >= args.max_images and orchestrator is not None:
                await orchestrator.stop("limit reached")
        elif kind == "ended":
            print(f"[ended] {event['reason']} ({event['total']} image(s))")
            finished.set()

    orchestrator = ImagineStreamOrchestrator(on_event, api_key=args.api_key)
    params = StreamParams(
        prompt=args.prompt,
        admin_base_url=args.admin_url,
        base_url=args.base_url,
        aspect_ratio=args.aspect_ratio,
        concurrency=args.concurrency,
        transport=args.transport,
    )
    try:
        session = await orchestrator.start(params)
    except AppError:
        return 1
    if session is None:
        return 1

    try:
        await finished.wait()
    finally:
        await orchestrator.aclose()
        if pending_saves:
            await asyncio.gather(*pending_saves)
    return 0


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    args = _build_parser().parse_args()
    try:
        raise SystemExit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    main()
