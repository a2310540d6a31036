"""FastAPI application exposing read-only dependency security scans."""

import logging
import os

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from git.exc import GitCommandError

from . import __version__
from .models import ScanRequest, SecurityReport
from .scanner import scan_repository

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Dependency Remediation",
    description="Scores npm manifests against known vulnerabilities and outdated packages",
    version=__version__,
)

DEFAULT_ORIGINS = "http://localhost:5173,http://localhost:3000,http://localhost:8000"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("DEP_REMEDIATION_CORS_ORIGINS", DEFAULT_ORIGINS).split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@app.post("/scan", response_model=SecurityReport)
def scan(request: ScanRequest) -> SecurityReport:
    """
    Scan a project and return its security report.

    - **path**: local directory to scan
    - **repo_url**: git repository to clone and scan (used when path is absent)
    - **branch**: branch to check out when cloning
    - **check_outdated**: also count outdated packages

    Updates are never applied through this endpoint.
    """
    if not request.path and not request.repo_url:
        raise HTTPException(status_code=422, detail="Provide either 'path' or 'repo_url'")

    try:
        logger.info(f"Scanning: {request.path or request.repo_url}")
        return scan_repository(
            repo_url=request.repo_url,
            local_path=request.path,
            branch=request.branch,
            check_outdated=request.check_outdated,
        )
    except GitCommandError as e:
        logger.error(f"Failed to clone repository: {e}")
        raise HTTPException(status_code=400, detail=f"Failed to clone repository: {request.repo_url}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Scan failed: {e}")
        raise HTTPException(status_code=500, detail=f"Scan failed: {str(e)}")
