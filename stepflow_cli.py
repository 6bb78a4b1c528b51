import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _conversation_path(conversation: str, suffix: str) -> str:
    return f"/api/conversations/{conversation}/{suffix}"


def _print_outcome(data: Dict[str, Any]) -> None:
    if data.get("kind") == "multi":
        print(f"Steps succeeded: {data.get('steps_succeeded')}/{data.get('total_steps')}")
        for outcome in data.get("outcomes") or []:
            result = outcome.get("result") or {}
            line = f"- Step {outcome.get('step_number')} ({outcome.get('tool') or 'free text'}): {outcome.get('state')}"
            if result.get("error"):
                line += f" - {result['error']}"
            print(line)
        if data.get("text"):
            print(data["text"])
        return
    result = data.get("result") or data
    if result.get("success"):
        print("OK")
        for key in ("text", "image_url", "video_url", "audio_url"):
            if result.get(key):
                print(f"{key}: {result[key]}")
    else:
        print(f"Failed: {result.get('error')}")


def _print_error(resp: httpx.Response) -> None:
    try:
        body = resp.json()
    except ValueError:
        body = resp.text
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        print(f"Error ({body['error'].get('kind')}): {body['error'].get('message')}")
    else:
        print(f"Request failed: HTTP {resp.status_code} {body}")


def _post(base: str, path: str, payload: Dict[str, Any], timeout: float) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(base, path), json=payload, timeout=timeout)
        if resp.status_code >= 400:
            _print_error(resp)
            return 1
        _print_outcome(resp.json())
    return 0


def _common_options(args: argparse.Namespace) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if args.quoted:
        payload["quoted_message_id"] = args.quoted
    return payload


def run_plan(args: argparse.Namespace) -> int:
    try:
        plan = json.loads(Path(args.file).read_text())
    except (OSError, ValueError) as exc:
        print(f"Could not read plan: {exc}")
        return 1
    payload = _common_options(args)
    payload["plan"] = plan.get("plan", plan) if isinstance(plan, dict) else {"steps": plan}
    return _post(args.base_url, _conversation_path(args.conversation, "plan"), payload, args.timeout)


def run_command(args: argparse.Namespace) -> int:
    payload = _common_options(args)
    if args.tool:
        payload["tool"] = args.tool
    if args.instruction:
        payload["instruction"] = args.instruction
    if args.args:
        try:
            payload["args"] = json.loads(args.args)
        except ValueError as exc:
            print(f"--args must be JSON: {exc}")
            return 1
    return _post(args.base_url, _conversation_path(args.conversation, "command"), payload, args.timeout)


def run_retry(args: argparse.Namespace) -> int:
    payload = _common_options(args)
    if args.modifications:
        payload["modifications"] = args.modifications
    if args.provider:
        payload["provider_override"] = args.provider
    if args.steps:
        payload["step_numbers"] = args.steps
    if args.tools:
        payload["step_tools"] = args.tools
    return _post(args.base_url, _conversation_path(args.conversation, "retry"), payload, args.timeout)


def run_last(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, _conversation_path(args.conversation, "last-command")), timeout=10)
        if resp.status_code == 404:
            print("No command recorded.")
            return 1
        if resp.status_code >= 400:
            _print_error(resp)
            return 1
        print(json.dumps(resp.json(), indent=2, ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="stepflow CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--conversation", default="cli", help="Conversation id")
    parser.add_argument("--quoted", default=None, help="Message id to quote in replies")
    parser.add_argument("--timeout", type=float, default=600, help="Request timeout seconds")
    subparsers = parser.add_subparsers(dest="command")

    plan = subparsers.add_parser("plan", help="Run a plan from a JSON file")
    plan.add_argument("file", help="Path to a plan JSON ({steps: [...]})")

    command = subparsers.add_parser("command", help="Run one tool or a free-text instruction")
    command.add_argument("--tool", default=None)
    command.add_argument("--args", default=None, help="Tool arguments as JSON")
    command.add_argument("--instruction", default=None)

    retry = subparsers.add_parser("retry", help="Replay the last command")
    retry.add_argument("--modifications", default=None)
    retry.add_argument("--provider", default=None, help="Provider override")
    retry.add_argument("--steps", type=int, nargs="*", default=None, help="Step numbers to rerun")
    retry.add_argument("--tools", nargs="*", default=None, help="Tool names to rerun")

    subparsers.add_parser("last", help="Show the last recorded command")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "plan":
        return run_plan(args)
    if args.command == "command":
        if not args.tool and not args.instruction:
            print("command needs --tool or --instruction")
            return 1
        return run_command(args)
    if args.command == "retry":
        return run_retry(args)
    if args.command == "last":
        return run_last(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
