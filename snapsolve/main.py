"""CLI/API entrypoint for SnapSolve."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from snapsolve.api.server import build_services, create_app
from snapsolve.errors import SolverError
from snapsolve.utils.config_loader import DEFAULT_CONFIG_PATH, load_solver_config
from snapsolve.utils.logger import configure_logging


def build_parser() -> argparse.ArgumentParser:
    """Builds CLI argument parser for app entrypoints.

    Returns:
        Configured argument parser.
    """
    parser = argparse.ArgumentParser(description="SnapSolve")
    parser.add_argument("--mode", choices=["cli", "api"], default="cli")
    parser.add_argument("--problem", type=str, default="", help="Typed problem statement")
    parser.add_argument("--image-path", type=str, default=None, help="Local path of a photographed problem")
    parser.add_argument("--question", type=str, default=None, help="Question about the image in --image-path")
    parser.add_argument("--follow-up", type=str, default=None, help="Follow-up question, requires --problem-id")
    parser.add_argument("--problem-id", type=str, default=None)
    parser.add_argument("--config", type=str, default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser


async def _run_cli_async(args: argparse.Namespace) -> Dict[str, Any]:
    services = build_services(load_solver_config(args.config))
    orchestrator = services.orchestrator
    try:
        if args.follow_up:
            reply = await orchestrator.continue_conversation(args.problem_id, args.follow_up)
            return {"problem_id": args.problem_id, "reply": reply}
        if args.image_path:
            image = Path(args.image_path).read_bytes()
            if args.question:
                problem = await orchestrator.solve_from_image_with_text(image, args.question)
            else:
                problem = await orchestrator.solve_from_image(image)
        else:
            problem = await orchestrator.solve_from_text(args.problem)
        return problem.to_dict()
    finally:
        await orchestrator.gateway.close()
        services.database.close()


def run_cli(args: argparse.Namespace) -> int:
    """Executes one solve or follow-up request using CLI parameters.

    Returns:
        Process exit code.

    Raises:
        ValueError: If no valid input is provided.
    """
    if args.follow_up and not args.problem_id:
        raise ValueError("--follow-up requires --problem-id")
    if not args.follow_up and not args.problem.strip() and not args.image_path:
        raise ValueError("--problem or --image-path is required in cli mode")

    try:
        payload = asyncio.run(_run_cli_async(args))
    except SolverError as exc:
        print(json.dumps({"error": type(exc).__name__, "detail": str(exc)}, ensure_ascii=True, indent=2))
        return 1

    print(json.dumps(payload, ensure_ascii=True, indent=2))
    return 0


def run_api(host: str, port: int, config_path: Optional[str] = None) -> int:
    """Runs FastAPI server using Uvicorn.

    Raises:
        RuntimeError: If Uvicorn dependency is unavailable.
    """
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required for API mode") from exc

    app = create_app(config_path)
    uvicorn.run(app, host=host, port=port)
    return 0


def main() -> int:
    """Application entrypoint for CLI and API modes."""
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.log_level)

    if args.mode == "api":
        return run_api(args.host, args.port, args.config)
    try:
        return run_cli(args)
    except ValueError as exc:
        parser.error(str(exc))
    return 2


if __name__ == "__main__":
    sys.exit(main())
