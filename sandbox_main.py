#!/usr/bin/env python3
"""
Sandbox entrypoint for dep-remediation.

stdin:  {"path": "."} or {"repo_url": "https://...", "branch": "main"}, plus optional "check_outdated"
stdout: the security report as JSON, or {"error": ...} with exit status 1
"""

import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).parent / "src"))

from dep_remediation.models import ScanRequest
from dep_remediation.scanner import scan_repository

USAGE = {
    "remote": {"repo_url": "https://github.com/user/repo"},
    "local": {"path": ".", "check_outdated": True},
}


def fail(message: str, **extra) -> None:
    print(json.dumps({"error": message, **extra}))
    sys.exit(1)


def main() -> None:
    # stdout is reserved for the report
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        payload = json.load(sys.stdin)
    except json.JSONDecodeError as e:
        fail(f"Invalid JSON input: {e}")

    if isinstance(payload, dict) and "directory" in payload and "path" not in payload:
        payload["path"] = payload.pop("directory")

    try:
        request = ScanRequest.model_validate(payload)
    except ValidationError as e:
        fail(f"Invalid scan request: {e.errors()[0]['msg']}", examples=USAGE)

    if not request.path and not request.repo_url:
        fail("Provide either 'repo_url' (git URL) or 'path'/'directory' (local path)", examples=USAGE)

    try:
        report = scan_repository(
            repo_url=request.repo_url,
            local_path=request.path,
            branch=request.branch,
            check_outdated=request.check_outdated,
        )
    except Exception as e:
        fail(str(e))
    print(report.model_dump_json())


if __name__ == "__main__":
    main()
