"""CLI entry point for foundry-bridge.

Terminal access to the adapter pipeline: probe the local service, inspect
model capabilities, chat with a model, or replay a captured SSE body
through the normalizer.

Entry point:
    foundry-bridge health
    foundry-bridge models [--json]
    foundry-bridge capabilities <model> [--json]
    foundry-bridge chat <model> <prompt> [--system TEXT] [--no-stream]
    foundry-bridge normalize <file>
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from foundry_bridge.cancellation import CancellationToken
from foundry_bridge.client import FoundryLocalClient
from foundry_bridge.errors import FoundryBridgeError
from foundry_bridge.schema import StreamEvent
from foundry_bridge.stream import normalize_text

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="foundry-bridge",
        description="Local model service adapter for Foundry Local.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--url", default=None, help="Service URL (default: FOUNDRY_LOCAL_URL or auto-discovery)"
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("health", help="Probe the local service")

    models_p = sub.add_parser("models", help="List catalog models with capabilities")
    models_p.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

    caps_p = sub.add_parser("capabilities", help="Show capabilities of one model")
    caps_p.add_argument("model", help="Model id or alias")
    caps_p.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

    chat_p = sub.add_parser("chat", help="Send one prompt to a model")
    chat_p.add_argument("model", help="Model id or alias")
    chat_p.add_argument("prompt", help="User message")
    chat_p.add_argument("--system", default=None, help="System prompt")
    chat_p.add_argument("--max-tokens", type=int, default=None, help="Max tokens in the response")
    chat_p.add_argument("--temperature", type=float, default=None, help="Sampling temperature")
    chat_p.add_argument("--no-stream", action="store_false", dest="stream", help="Wait for the full response")

    norm_p = sub.add_parser("normalize", help="Normalize a captured SSE body to stdout")
    norm_p.add_argument("file", help="File containing the raw event stream")

    return parser


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def _cmd_health(client: FoundryLocalClient) -> int:
    """Print probe outcome. Returns 0 only when healthy."""
    report = await client.health()
    print(f"{report.status.value} {report.endpoint}")
    if report.version:
        print(f"version: {report.version}")
    if report.detail:
        print(report.detail, file=sys.stderr)
    return 0 if report.ok else 1


async def _cmd_models(client: FoundryLocalClient, json_output: bool = False) -> int:
    """List catalog models. Returns exit code."""
    models = await client.list_models()

    if json_output:
        json.dump({k: v.model_dump() for k, v in models.items()}, sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for model_id, caps in sorted(models.items()):
            flags = [
                name for name, enabled in (
                    ("vision", caps.supports_vision),
                    ("tools", caps.supports_tool_calls),
                    ("reasoning", caps.supports_reasoning),
                ) if enabled
            ]
            print(f"{model_id}\tctx={caps.context_window}\tout={caps.max_output_tokens}\t{','.join(flags)}")
        if not models:
            print("No models found", file=sys.stderr)

    return 0


async def _cmd_capabilities(client: FoundryLocalClient, model_id: str, json_output: bool = False) -> int:
    caps = await client.get_capabilities(model_id)

    if json_output:
        json.dump(caps.model_dump(), sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for key, value in caps.model_dump().items():
            print(f"{key}: {value}")
    return 0


def _print_event(event: StreamEvent) -> None:
    if event.type == "delta":
        sys.stdout.write(event.text)
        sys.stdout.flush()
    elif event.type == "done":
        sys.stdout.write("\n")


async def _cmd_chat(
    client: FoundryLocalClient,
    model_id: str,
    prompt: str,
    system: Optional[str] = None,
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    stream: bool = True,
) -> int:
    """Chat once. Ctrl-C cancels the request. Returns exit code."""
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False

    try:
        if stream:
            result = await client.stream_chat(
                model_id, messages, on_event=_print_event, cancel=token,
                max_tokens=max_tokens, temperature=temperature,
            )
        else:
            result = await client.complete(
                model_id, messages, cancel=token,
                max_tokens=max_tokens, temperature=temperature,
            )
            print(result.content)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)

    if result.cancelled:
        print("\nCancelled", file=sys.stderr)
        return 130
    if result.usage:
        logger.info(f"Usage: {result.usage}")
    return 0


def _cmd_normalize(path: str) -> int:
    """Replay a captured SSE body through the normalizer."""
    source = Path(path)
    if not source.exists():
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 1
    sys.stdout.write(normalize_text(source.read_bytes()).decode("utf-8", errors="replace"))
    return 0


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def _make_client(url: Optional[str]) -> FoundryLocalClient:
    return FoundryLocalClient(service_url=url)


async def _dispatch(args: argparse.Namespace) -> int:
    async with _make_client(args.url) as client:
        try:
            if args.command == "health":
                return await _cmd_health(client)
            if args.command == "models":
                return await _cmd_models(client, json_output=args.json_output)
            if args.command == "capabilities":
                return await _cmd_capabilities(client, args.model, json_output=args.json_output)
            if args.command == "chat":
                return await _cmd_chat(
                    client,
                    args.model,
                    args.prompt,
                    system=args.system,
                    max_tokens=args.max_tokens,
                    temperature=args.temperature,
                    stream=args.stream,
                )
        except FoundryBridgeError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 1


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    # Load env
    load_dotenv()

    if args.command == "normalize":
        code = _cmd_normalize(args.file)
    else:
        code = asyncio.run(_dispatch(args))

    sys.exit(code)


if __name__ == "__main__":
    main()
