"""
CLI Client for TaskRelay

A command-line interface for the TaskRelay API: dispatch a task to agents,
inspect or close a pending operation, and sign a notification payload the
way an agent would (handy for testing webhooks with curl).
"""

import argparse
import json
import os
import sys
from pathlib import Path

import httpx

from orchestrator.notifications import SIGNATURE_HEADER, TIMESTAMP_HEADER
from orchestrator.verifier import sign

# Default API URL
DEFAULT_API_URL = os.getenv("TASKRELAY_API_URL", "http://localhost:8000")


def _parse_answers(pairs) -> dict:
    """field=value pairs; values are read as JSON when possible"""
    answers = {}
    for pair in pairs or []:
        if "=" not in pair:
            print(f"Invalid answer '{pair}', expected field=value")
            sys.exit(2)
        field, raw = pair.split("=", 1)
        try:
            answers[field] = json.loads(raw)
        except ValueError:
            answers[field] = raw
    return answers


def dispatch_task(
    operation_name: str,
    args: dict,
    agent_ids=None,
    answers=None,
    operation_id=None,
    api_url: str = DEFAULT_API_URL,
    timeout: float = 120.0
) -> dict:
    """
    Submit a task to the /tasks/{operation_name} endpoint.

    Returns:
        Response dict with operation_id and one outcome per agent
    """
    body = {"args": args}
    if agent_ids:
        body["agent_ids"] = agent_ids
    if answers:
        body["answers"] = answers
    if operation_id:
        body["operation_id"] = operation_id

    try:
        response = httpx.post(f"{api_url}/tasks/{operation_name}", json=body, timeout=timeout)
        response.raise_for_status()
        return response.json()

    except httpx.HTTPStatusError as e:
        print(f"Error dispatching task: {e.response.status_code} {e.response.text}")
        sys.exit(1)

    except httpx.HTTPError as e:
        print(f"Error dispatching task: {e}")
        sys.exit(1)


def get_operation(operation_id: str, agent_id: str, api_url: str = DEFAULT_API_URL) -> dict:
    """Fetch the pending record of an operation"""
    try:
        response = httpx.get(f"{api_url}/operations/{operation_id}/{agent_id}", timeout=10.0)
        response.raise_for_status()
        return response.json()

    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            print(f"Operation not found: {operation_id}/{agent_id}")
        else:
            print(f"Error getting operation: {e}")
        sys.exit(1)

    except httpx.HTTPError as e:
        print(f"Error getting operation: {e}")
        sys.exit(1)


def close_operation(operation_id: str, agent_id: str, api_url: str = DEFAULT_API_URL) -> dict:
    try:
        response = httpx.delete(f"{api_url}/operations/{operation_id}/{agent_id}", timeout=10.0)
        response.raise_for_status()
        return response.json()

    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            print(f"Operation not found: {operation_id}/{agent_id}")
        else:
            print(f"Error closing operation: {e}")
        sys.exit(1)

    except httpx.HTTPError as e:
        print(f"Error closing operation: {e}")
        sys.exit(1)


def sign_payload(payload_path: str, secret: str, timestamp=None) -> dict:
    """
    Compute signature headers for a JSON payload file.

    Returns:
        Header name -> value
    """
    payload = json.loads(Path(payload_path).read_text(encoding="utf-8"))
    signature, ts = sign(payload, timestamp, secret)
    return {SIGNATURE_HEADER: signature, TIMESTAMP_HEADER: str(ts)}


def format_outcomes(response: dict):
    """
    Format and display dispatch results.

    Args:
        response: /tasks response dict
    """
    print("\n" + "=" * 60)
    print(f"TASK {response['operation_name']}  ({response['operation_id']})")
    print("=" * 60)

    for outcome in response["outcomes"]:
        if outcome.get("pending"):
            label = "PENDING"
        elif outcome["success"]:
            label = "OK"
        else:
            label = "FAILED"
        print(f"\n[{label}] {outcome['agent_id']}  state={outcome['state']}  "
              f"{outcome['response_time_ms']:.0f}ms")

        if outcome.get("data") is not None:
            print(json.dumps(outcome["data"], indent=2))
        if outcome.get("error"):
            error = outcome["error"]
            print(f"Error [{error['code']}/{error['recovery']}]: {error['message']}")
        if outcome.get("work_id"):
            print(f"Work ID: {outcome['work_id']}")

    print("\n" + "=" * 60)


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(description="CLI client for TaskRelay")
    parser.add_argument(
        "--api-url",
        default=DEFAULT_API_URL,
        help=f"API base URL (default: {DEFAULT_API_URL})"
    )
    subparsers = parser.add_subparsers(dest="command")

    dispatch_parser = subparsers.add_parser("dispatch", help="Run a task against agents")
    dispatch_parser.add_argument("operation", help="Operation name")
    dispatch_parser.add_argument("--args", default="{}", help="Operation arguments as JSON")
    dispatch_parser.add_argument("--agent", action="append", dest="agents", help="Target agent id (repeatable)")
    dispatch_parser.add_argument("--answer", action="append", dest="answers", help="Clarification answer field=value (repeatable)")
    dispatch_parser.add_argument("--operation-id", help="Reuse an operation id")
    dispatch_parser.add_argument("--json", action="store_true", help="Print the raw JSON response")

    status_parser = subparsers.add_parser("status", help="Show a pending operation")
    status_parser.add_argument("operation_id")
    status_parser.add_argument("agent_id")

    close_parser = subparsers.add_parser("close", help="Forget a finished operation")
    close_parser.add_argument("operation_id")
    close_parser.add_argument("agent_id")

    sign_parser = subparsers.add_parser("sign", help="Compute signature headers for a payload file")
    sign_parser.add_argument("payload", help="Path to a JSON payload")
    sign_parser.add_argument("--secret", default=os.getenv("TASKRELAY_WEBHOOK_SECRET"), help="Shared secret")
    sign_parser.add_argument("--timestamp", type=int, help="Unix timestamp (default: now)")

    args = parser.parse_args()

    if args.command == "dispatch":
        try:
            task_args = json.loads(args.args)
        except ValueError as e:
            print(f"--args is not valid JSON: {e}")
            sys.exit(2)

        response = dispatch_task(
            args.operation,
            task_args,
            agent_ids=args.agents,
            answers=_parse_answers(args.answers),
            operation_id=args.operation_id,
            api_url=args.api_url
        )
        if args.json:
            print(json.dumps(response, indent=2))
        else:
            format_outcomes(response)
        return

    if args.command == "status":
        print(json.dumps(get_operation(args.operation_id, args.agent_id, args.api_url), indent=2))
        return

    if args.command == "close":
        close_operation(args.operation_id, args.agent_id, args.api_url)
        print(f"Closed {args.operation_id}/{args.agent_id}")
        return

    if args.command == "sign":
        if not args.secret:
            print("No secret given (use --secret or TASKRELAY_WEBHOOK_SECRET)")
            sys.exit(2)
        for name, value in sign_payload(args.payload, args.secret, args.timestamp).items():
            print(f"{name}: {value}")
        return

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
