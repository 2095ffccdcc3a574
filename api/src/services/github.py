"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
from typing import Any, Dict, List, Optional

from api.src.config import get_settings
from controller.src.models.definition import EventKind
from controller.src.models.run import RepositoryEvent

logger = logging.getLogger(__name__)
settings = get_settings()

DEFINITION_FILES = (
    ".conveyor.yml",
    ".conveyor.yaml",
    "conveyor.yml",
    "conveyor.yaml",
)

PULL_REQUEST_ACTIONS = ("opened", "synchronize", "reopened")
RELEASE_ACTIONS = ("published",)

class RepositoryError(Exception):
    """Cloning or reading the repository failed."""

def verify_signature(payload: bytes, signature: str, secret: Optional[str] = None) -> bool:
    """Verify GitHub webhook signature."""
    secret = settings.github_webhook_secret if secret is None else secret
    if not secret:
        # No secret configured (development)
        return True
    if not signature:
        return False

    expected = "sha256=" + hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

async def clone_repository(clone_url: str, commit_sha: Optional[str] = None, branch: Optional[str] = None) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="conveyor_")
    repo_path = os.path.join(temp_dir, "repo")

    command = ["git", "clone", "--depth", "1"]
    if branch and not commit_sha:
        command += ["--branch", branch]

    try:
        subprocess.run(
            command + [clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=settings.clone_timeout,
        )

        # Checkout specific commit if provided
        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60,
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30,
            )

        return repo_path
    except subprocess.TimeoutExpired:
        cleanup_repo(repo_path)
        raise RepositoryError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        cleanup_repo(repo_path)
        raise RepositoryError(f"Failed to clone repository: {e.stderr.decode(errors='replace')}")

def fetch_pipeline_config(repo_path: str) -> Optional[str]:
    """
    Read the pipeline definition from a repository checkout.
    Returns the YAML text, or None if the repository has none.
    """
    for filename in DEFINITION_FILES:
        config_path = os.path.join(repo_path, filename)
        if os.path.exists(config_path):
            with open(config_path, "r") as f:
                return f.read()
    return None

def cleanup_repo(repo_path: str):
    """Clean up cloned repository."""
    if not repo_path:
        return
    parent = os.path.dirname(repo_path)
    try:
        if os.path.exists(parent):
            shutil.rmtree(parent)
    except OSError as e:
        logger.warning(f"Failed to remove {parent}: {e}")

def changed_paths(payload: Dict[str, Any]) -> List[str]:
    """Files added, modified or removed by the pushed commits, in first-seen order."""
    seen: Dict[str, None] = {}
    for commit in payload.get("commits") or []:
        for key in ("added", "modified", "removed"):
            for path in commit.get(key) or []:
                seen.setdefault(path, None)
    return list(seen)

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract repository and push info from a GitHub webhook payload."""
    repo = payload.get("repository", {})
    head_commit = payload.get("head_commit") or {}

    # refs/heads/main -> main
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": (payload.get("pusher") or {}).get("name", "") or (payload.get("sender") or {}).get("login", ""),
    }

def parse_webhook_event(event_name: str, payload: Dict[str, Any]) -> Optional[RepositoryEvent]:
    """
    Turn a GitHub webhook delivery into a RepositoryEvent.
    Returns None for deliveries that never trigger pipelines.
    """
    info = parse_webhook_payload(payload)
    common = {
        "repository": info["repo_full_name"],
        "clone_url": info["clone_url"],
    }
    sender = (payload.get("sender") or {}).get("login", "")

    if event_name == "push":
        if payload.get("deleted") or not payload.get("ref", "").startswith("refs/heads/"):
            return None
        return RepositoryEvent(
            kind=EventKind.PUSH,
            branch=info["branch"],
            changed_paths=changed_paths(payload),
            actor=info["pusher"],
            commit_sha=info["commit_sha"],
            **common,
        )

    if event_name == "pull_request":
        if payload.get("action") not in PULL_REQUEST_ACTIONS:
            return None
        pull_request = payload.get("pull_request") or {}
        return RepositoryEvent(
            kind=EventKind.PULL_REQUEST,
            branch=(pull_request.get("base") or {}).get("ref", ""),
            actor=sender,
            commit_sha=(pull_request.get("head") or {}).get("sha", ""),
            **common,
        )

    if event_name == "release":
        if payload.get("action") not in RELEASE_ACTIONS:
            return None
        release = payload.get("release") or {}
        return RepositoryEvent(
            kind=EventKind.RELEASE,
            branch=release.get("target_commitish", ""),
            actor=sender,
            **common,
        )

    return None
