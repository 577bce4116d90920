"""
Local preview of a pre-built PLDB site.

Downloads the site tarball from the latest release, or from a pull
request's workflow artifact, and serves it locally. No rebuild needed.
"""

from __future__ import annotations

import argparse
import shutil
import tarfile
from pathlib import Path
from typing import Optional

from pldb.build.errors import ExternalToolMissing, FatalPrecondition
from pldb.build.phases import serve_directory
from pldb.core.utils import get_git_remote_url, github_slug, log, run_cmd

DEFAULT_PREVIEW_PORT = 8080
DEFAULT_WORK_DIR = Path("/tmp/pldb-local-test")
SITE_TARBALL = "site.tar.gz"


# =============================================================================
# Repo Detection
# =============================================================================


def detect_repo(directory: Path) -> Optional[str]:
    """Detect ``owner/repo`` from the origin remote of ``directory``."""
    url = get_git_remote_url(directory)
    if url is None:
        return None
    return github_slug(url)


# =============================================================================
# Artifact Download
# =============================================================================


def _gh(args: list[str], capture: bool = False) -> str:
    """Run a gh CLI command and return its stdout."""
    if shutil.which("gh") is None:
        raise ExternalToolMissing("gh", "install the GitHub CLI and run `gh auth login`")
    result = run_cmd(["gh", *args], capture=capture)
    return (result.stdout or "").strip()


def _fresh_dir(path: Path) -> Path:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
    return path


def download_latest_release(repo: str, work_dir: Path) -> Path:
    """Download site.tar.gz from the ``latest`` release. Returns the tarball path."""
    download_dir = _fresh_dir(work_dir / "latest")
    _gh([
        "release", "download", "latest",
        "--repo", repo,
        "--pattern", SITE_TARBALL,
        "--dir", str(download_dir),
    ])
    return download_dir / SITE_TARBALL


def download_pr_artifact(repo: str, pr_number: int, work_dir: Path) -> Path:
    """Download the site artifact of a PR's last successful workflow run."""
    branch = _gh(
        [
            "pr", "view", str(pr_number),
            "--repo", repo,
            "--json", "headRefName",
            "--jq", ".headRefName",
        ],
        capture=True,
    )
    log.info(f"PR branch: {branch}")

    run_id = _gh(
        [
            "run", "list",
            "--repo", repo,
            "--branch", branch,
            "--event", "pull_request",
            "--status", "success",
            "--limit", "1",
            "--json", "databaseId",
            "--jq", ".[0].databaseId",
        ],
        capture=True,
    )
    if not run_id or run_id == "null":
        raise FatalPrecondition(
            f"No successful workflow run found for PR #{pr_number} (branch: {branch})"
        )
    log.info(f"Run ID: {run_id}")

    download_dir = _fresh_dir(work_dir / f"pr-{pr_number}")
    _gh([
        "run", "download", run_id,
        "--repo", repo,
        "--name", f"site-pr-{pr_number}",
        "--dir", str(download_dir),
    ])
    return download_dir / SITE_TARBALL


def extract_site(tarball: Path, dest: Path) -> Path:
    """Extract the site tarball into a fresh ``dest``.

    Raises:
        FatalPrecondition: If the tarball is missing or has members that
            would land outside ``dest``.
    """
    if not tarball.exists():
        raise FatalPrecondition(f"Site tarball not found at {tarball}")

    _fresh_dir(dest)
    root = dest.resolve()
    with tarfile.open(tarball, "r:gz") as tar:
        for member in tar.getmembers():
            target = (root / member.name).resolve()
            if target != root and root not in target.parents:
                raise FatalPrecondition(f"Refusing to extract {member.name}: outside {dest}")
            if member.issym() or member.islnk():
                # Symlinks resolve from their own directory, hard links from the archive root
                base = target.parent if member.issym() else root
                link_target = (base / member.linkname).resolve()
                if root not in link_target.parents and link_target != root:
                    raise FatalPrecondition(f"Refusing to extract link {member.name}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(root, filter="data")
        else:
            tar.extractall(root)
    return dest


# =============================================================================
# Command
# =============================================================================


def cmd_preview(args: argparse.Namespace) -> int:
    """Execute the preview command."""
    repo = args.repo or detect_repo(Path.cwd())
    if not repo:
        log.error("Could not detect repo from git remote. Use --repo owner/repo")
        return 1

    work_dir = Path(args.work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)

    try:
        if args.pr is not None:
            log.header(f"Testing PR #{args.pr} from {repo}")
            tarball = download_pr_artifact(repo, args.pr, work_dir)
        else:
            log.header(f"Testing latest release from main ({repo})")
            tarball = download_latest_release(repo, work_dir)

        log.info("Extracting site...")
        site_dir = extract_site(tarball, work_dir / "site")

        return serve_directory(site_dir, args.port)

    except KeyboardInterrupt:
        log.warning("Preview interrupted")
        return 130
    except Exception as e:
        log.error(str(e))
        return 1


def add_preview_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--pr",
        type=int,
        default=None,
        help="Pull request number whose site artifact to preview (default: latest release)",
    )
    parser.add_argument(
        "--repo",
        default=None,
        help="GitHub repo as owner/repo (default: detected from git remote)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PREVIEW_PORT,
        help=f"Port to serve on (default: {DEFAULT_PREVIEW_PORT})",
    )
    parser.add_argument(
        "--work-dir",
        default=str(DEFAULT_WORK_DIR),
        help=f"Download and extraction directory (default: {DEFAULT_WORK_DIR})",
    )
