"""Command-line entry point for the autoflow agent.

Runs one request through the pipeline directly in the terminal, or starts
the HTTP server.

Usage:
    autoflow-agent run "Every morning at 9 post the weather to Slack"
    autoflow-agent run "..." --user alice --key deploy-42 --json
    autoflow-agent refresh-catalog
    autoflow-agent serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser
from uuid import uuid4

from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _run_request(text: str, user_id: str, key: str | None, as_json: bool) -> int:
    """Run a single request end to end and print the outcome.  Returns the exit code."""
    from autoflow_agent.agent.pipeline import (
        PipelineRequest,
        PipelineRunner,
        close_components,
        create_components,
    )
    from autoflow_agent.settings import PipelineSettings

    settings = PipelineSettings.from_env()
    components = await create_components(settings)
    try:
        runner = PipelineRunner(components, max_workers=1)
        response = await runner.run(
            PipelineRequest(user_id=user_id, text=text, idempotency_key=key or str(uuid4()))
        )
    finally:
        await close_components(components)

    if as_json:
        print(json.dumps(response.to_dict(), indent=2, default=str))
        return 0 if response.success else 1

    print(f"\nOutcome : {response.outcome}")
    print(f"Message : {response.message}")
    if response.workflow_id:
        print(f"Workflow: {response.workflow_id}")
    if response.alternatives:
        print("\nAlternatives:")
        for missing, options in response.alternatives.items():
            print(f"  {missing}: {', '.join(options)}")
    if response.feedback_id is not None:
        print(f"\nFeedback entry #{response.feedback_id} recorded.")
    return 0 if response.success else 1


async def _refresh_catalog() -> int:
    from autoflow_agent.client import EngineClient, EngineSettings
    from autoflow_agent.knowledge.catalog import CapabilityCatalog
    from autoflow_agent.settings import PipelineSettings

    settings = PipelineSettings.from_env()
    client = EngineClient(EngineSettings.from_env())
    catalog = CapabilityCatalog(
        client=client,
        cache_path=settings.catalog_cache_path,
        ttl=settings.catalog_ttl,
        timeout=settings.catalog_timeout,
    )
    try:
        snapshot = await catalog.refresh()
    finally:
        await catalog.aclose()
        await client.close()

    print(f"Catalog source: {snapshot.source}")
    print(f"Node types    : {len(snapshot)}")
    print(f"Fingerprint   : {snapshot.fingerprint[:16]}")
    return 0 if snapshot.source == "live" else 1


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    parser = ArgumentParser(
        prog="autoflow-agent",
        description="Generate, validate and deploy automation workflows from plain language",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log pipeline progress")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    run_p = sub.add_parser("run", help="Run one request through the pipeline")
    run_p.add_argument("text", help="Natural-language description of the workflow")
    run_p.add_argument("--user", default="cli", help="user id recorded with feedback (default: cli)")
    run_p.add_argument("--key", default=None, metavar="KEY", help="idempotency key (default: random)")
    run_p.add_argument("--json", action="store_true", help="print the full response as JSON")

    sub.add_parser("refresh-catalog", help="Re-introspect the engine and update the catalog cache")

    serve_p = sub.add_parser("serve", help="Start the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.add_argument("--reload", action="store_true")

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger("autoflow_agent").setLevel(logging.INFO)

    if args.command == "run":
        sys.exit(asyncio.run(_run_request(args.text, args.user, args.key, args.json)))
    elif args.command == "refresh-catalog":
        sys.exit(asyncio.run(_refresh_catalog()))
    elif args.command == "serve":
        from autoflow_agent.api import serve
        serve(host=args.host, port=args.port, reload=args.reload)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
