"""luna-vits command line entrypoint.

Loads settings, then inspects or speaks through the configured Gradio
voice app.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from luna_vits.adapters.tts.gradio_tts import GradioTTSAdapter, SynthesisError
from luna_vits.config import get_settings
from luna_vits.gradio.client import GradioClient
from luna_vits.gradio.errors import GradioClientError
from luna_vits.gradio.events import ClientOptions
from luna_vits.logging import get_logger, setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="luna-vits",
        description="Speak through Gradio-hosted VITS voice apps",
    )
    parser.add_argument("--url", type=str, default=None, help="App URL or space name (overrides GRADIO_URL)")
    sub = parser.add_subparsers(dest="command", required=True)

    api = sub.add_parser("api", help="Print the app's API")
    api.add_argument("--all", action="store_true", help="Include unnamed endpoints")

    sub.add_parser("speakers", help="List discovered speakers")

    say = sub.add_parser("say", help="Synthesise text")
    say.add_argument("speaker", type=str, help="Speaker name")
    say.add_argument("text", type=str, help="Text to speak")
    say.add_argument("-o", "--output", type=Path, default=None, help="Write audio to this file")
    say.add_argument("--language", type=str, default=None, help="Language code, e.g. ZH, JP, EN")
    return parser


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entrypoint; returns the process exit code."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    if args.url:
        settings.gradio_url = args.url
    setup_logging(settings.log_level)
    logger = get_logger("main")

    logger.info("Gradio app: %s", settings.gradio_url)

    # ── Raw API view ─────────────────────────────────────
    if args.command == "api":
        options = ClientOptions(
            hf_token=settings.gradio_hf_token,
            auth=settings.gradio_auth,
            metrics_enabled=settings.metrics_enabled,
        )
        try:
            async with await GradioClient.connect(settings.gradio_url, options) as client:
                print(client.render_api(all_endpoints=args.all))
        except GradioClientError as exc:
            logger.error("Could not load API: %s", exc)
            return 1
        return 0

    # ── Speech ───────────────────────────────────────────
    adapter = GradioTTSAdapter(settings)
    try:
        if args.command == "speakers":
            for speaker in await adapter.list_speakers():
                print(f"{speaker.name}\t{speaker.endpoint}")
            return 0

        overrides = {"language": args.language} if args.language else None
        result = await adapter.synthesize(args.text, speaker=args.speaker, overrides=overrides)
        print(result.url)
        if args.output is not None:
            await adapter.download(result)
            args.output.write_bytes(result.audio or b"")
            logger.info("Wrote %d bytes to %s", len(result.audio or b""), args.output)
        return 0
    except SynthesisError as exc:
        logger.error("Synthesis failed: %s", exc)
        return 1
    except (KeyError, RuntimeError) as exc:
        # unknown GRADIO_PROCESSOR or client registry at capacity
        logger.error("Gradio backend unavailable: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down (keyboard interrupt)")
        return 130
    finally:
        await adapter.close()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
