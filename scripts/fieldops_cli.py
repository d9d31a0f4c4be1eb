#!/usr/bin/env python3
"""
FieldOps command line: quick lookups against the backend.

Usage:
    python scripts/fieldops_cli.py detect-territory 78701
    python scripts/fieldops_cli.py nearest-crews 30.27 -97.74 --limit 3
    python scripts/fieldops_cli.py project-stage <project-id>
    python scripts/fieldops_cli.py plan-status <function-id> 2025 2
    python scripts/fieldops_cli.py --dry-run detect-territory 78701   # Validate config, no API calls
    python scripts/fieldops_cli.py --verbose ...                      # Debug logging
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from backend_client import BackendClient
from crews import CrewService, TerritoryService
from errors import PipelineError
from operating_plan import OperatingPlanService
from project_stage import compute_project_stage
from projects import ProjectService
from routing import nearest_crews
from scripts._credentials import load_credentials
from territories import territory_match_type
from utils import load_config, normalize_zip

logger = logging.getLogger("fieldops_cli")


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_detect_territory(client: BackendClient, args) -> int:
    territory = TerritoryService(client).territory_for_zip(args.zip)
    if territory is None:
        logger.warning("No territory serves ZIP %s", args.zip)
        return 1
    _print({
        "zip": normalize_zip(args.zip),
        "territory_id": territory.get("id"),
        "territory": territory.get("name"),
        "code": territory.get("code"),
        "match": territory_match_type(args.zip, territory),
    })
    return 0


def cmd_nearest_crews(client: BackendClient, args) -> int:
    crews = CrewService(client).list_crews(active_only=True)
    results = nearest_crews(args.lat, args.lng, crews, limit=args.limit)
    _print([
        {
            "crew_id": r.crew.get("id"),
            "crew": r.crew.get("name"),
            "distance_miles": r.distance_miles,
            "travel_minutes": r.travel_minutes,
        }
        for r in results
    ])
    return 0


def cmd_project_stage(client: BackendClient, args) -> int:
    project = ProjectService(client).get_project_full(args.project_id)
    computed = compute_project_stage(project)
    _print({
        "project_id": args.project_id,
        "status": project.get("status"),
        **asdict(computed),
    })
    return 0


def cmd_plan_status(client: BackendClient, args) -> int:
    status = OperatingPlanService(client).quarter_status(args.function_id, args.year, args.quarter)
    _print({"function_id": args.function_id, "year": args.year, "quarter": args.quarter, **asdict(status)})
    return 0


COMMANDS = {
    "detect-territory": cmd_detect_territory,
    "nearest-crews": cmd_nearest_crews,
    "project-stage": cmd_project_stage,
    "plan-status": cmd_plan_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FieldOps data layer CLI")
    parser.add_argument("--dry-run", action="store_true",
                        help="Validate config and credentials, no API calls")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("detect-territory", help="Territory serving a ZIP code")
    p.add_argument("zip")

    p = sub.add_parser("nearest-crews", help="Active crews nearest a job site")
    p.add_argument("lat", type=float)
    p.add_argument("lng", type=float)
    p.add_argument("--limit", type=int, default=5)

    p = sub.add_parser("project-stage", help="Computed pipeline stage of a project")
    p.add_argument("project_id")

    p = sub.add_parser("plan-status", help="Workflow state of a function's quarterly objectives")
    p.add_argument("function_id")
    p.add_argument("year", type=int)
    p.add_argument("quarter", type=int, choices=[1, 2, 3, 4])

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Load credentials
    try:
        creds = load_credentials()
    except ValueError as e:
        logger.error("Credential error: %s", e)
        return 1

    config = load_config()
    if args.dry_run:
        logger.info("Dry run: config sections %s, backend %s",
                    sorted(config), creds["FIELDOPS_BACKEND_URL"])
        return 0

    client = BackendClient.from_credentials(creds)
    try:
        return COMMANDS[args.command](client, args)
    except PipelineError as e:
        logger.error("%s failed: %s", args.command, e.user_message)
        logger.debug("Detail: %s", e.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
