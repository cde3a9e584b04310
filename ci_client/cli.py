import argparse
import json
import os
import sys
from datetime import datetime

from .client import cancel_run, get_run, list_runs, post_event


def get_server_url() -> str:
    """
    Get the CI server URL from environment variable or use default.

    Environment variables:
    - CI_SERVER_URL: Custom server URL (useful for testing with different ports)
    """
    return os.environ.get("CI_SERVER_URL", "http://localhost:8000")


def format_time(time_str: str | None) -> str:
    """Format ISO timestamp to human-readable format."""
    if not time_str:
        return "N/A"
    try:
        dt = datetime.fromisoformat(time_str.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, AttributeError):
        return time_str


def print_runs(runs: list[dict]) -> None:
    if not runs:
        print("No runs found.")
        return

    print(f"{'RUN ID':<38} {'STATE':<12} {'EXIT':<6} {'STARTED':<22} {'DURATION':<10}")
    print("-" * 92)
    for run in runs:
        exit_code = "-" if run.get("exit_code") is None else str(run["exit_code"])
        started = format_time(run.get("started_at"))
        duration = f"{run.get('duration_ms', 0)}ms"
        print(
            f"{run['run_id']:<38} {run['state']:<12} {exit_code:<6} "
            f"{started:<22} {duration:<10}"
        )


def print_run(run: dict) -> None:
    print(f"Run:       {run['run_id']}")
    print(f"Task:      {run['task_id']}")
    print(f"State:     {run['state']}")
    if run.get("exit_code") is not None:
        print(f"Exit code: {run['exit_code']}")
    if run.get("error"):
        print(f"Error:     {run['error']}")

    report = run.get("report")
    if report and report.get("output"):
        print()
        print(report["output"], end="")


def main():
    """Main entry point for the CI CLI."""
    parser = argparse.ArgumentParser(description="CI pipeline client")
    subparsers = parser.add_subparsers(dest="command")

    # ci event --kind K --repo-url U --head-sha S [--user-email E] [--member]
    event_parser = subparsers.add_parser(
        "event", help="Send an event notification to the server"
    )
    event_parser.add_argument("--kind", required=True, help="Event kind")
    event_parser.add_argument("--repo-url", required=True, help="Repository URL")
    event_parser.add_argument("--head-sha", required=True, help="Head commit SHA")
    event_parser.add_argument("--user-email", help="Triggering user's email")
    event_parser.add_argument(
        "--member",
        action="store_true",
        help="The sender is a member of the repository",
    )

    # ci runs [--json] [--limit N]
    runs_parser = subparsers.add_parser("runs", help="List recent runs")
    runs_parser.add_argument(
        "--json", dest="json_mode", action="store_true", help="Output in JSON format"
    )
    runs_parser.add_argument("--limit", type=int, default=50, help="Maximum runs")

    # ci status <run_id> [--json]
    status_parser = subparsers.add_parser("status", help="Show a run's status")
    status_parser.add_argument("run_id", help="Run ID")
    status_parser.add_argument(
        "--json", dest="json_mode", action="store_true", help="Output in JSON format"
    )

    # ci cancel <run_id>
    cancel_parser = subparsers.add_parser("cancel", help="Cancel an in-flight run")
    cancel_parser.add_argument("run_id", help="Run ID")

    args = parser.parse_args()
    server_url = get_server_url()

    try:
        if args.command == "event":
            outcome = post_event(
                {
                    "kind": args.kind,
                    "repo_url": args.repo_url,
                    "head_sha": args.head_sha,
                    "user_email": args.user_email,
                    "sender_is_member": args.member,
                },
                server_url=server_url,
            )
            if outcome.get("run_id"):
                print(f"Run dispatched: {outcome['run_id']}")
                sys.exit(0)
            print(f"No run dispatched: {outcome.get('reason')}", file=sys.stderr)
            sys.exit(1)

        elif args.command == "runs":
            runs = list_runs(server_url=server_url, limit=args.limit)
            if args.json_mode:
                print(json.dumps(runs, indent=2))
            else:
                print_runs(runs)
            sys.exit(0)

        elif args.command == "status":
            run = get_run(args.run_id, server_url=server_url)
            if args.json_mode:
                print(json.dumps(run, indent=2))
            else:
                print_run(run)
            sys.exit(0)

        elif args.command == "cancel":
            if cancel_run(args.run_id, server_url=server_url):
                print(f"Cancellation requested for run {args.run_id}")
            else:
                print(f"Run {args.run_id} is not in flight")
            sys.exit(0)

    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
