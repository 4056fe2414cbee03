"""
Thin wrappers around the git command line.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import subprocess

from .core import GitError
from .reporting import Reporter, get_reporter

IMAGE_BRANCH = "mc-model-preview-images"
BOT_NAME = "github-actions[bot]"
BOT_EMAIL = "github-actions[bot]@users.noreply.github.com"
RAW_URL = "https://raw.githubusercontent.com/{repository}/{sha}/{path}"


def run_git(*args: str, cwd: str = None, check: bool = True) -> subprocess.CompletedProcess:
    """
    Runs 'git <args>' and returns the completed process.

    raises:
        GitError if 'check' is set and git exits with a non-zero code.
    """
    try:
        result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True)
    except OSError as exception:
        raise GitError(f"Could not run git: {exception}") from exception

    if check and result.returncode != 0:
        raise GitError(f"'git {' '.join(args)}' failed ({result.returncode}): {result.stderr.strip()}")
    return result


def checkout(ref: str, cwd: str = None) -> None:
    """
    Checks out 'ref'. When the plain checkout fails (for example because the
    branch exists on several remotes), origin is preferred.
    """
    if run_git("checkout", ref, cwd=cwd, check=False).returncode == 0:
        return

    if run_git("checkout", "-B", ref, "--track", f"origin/{ref}", cwd=cwd, check=False).returncode == 0:
        return

    run_git("config", "checkout.defaultRemote", "origin", cwd=cwd)
    run_git("fetch", "origin", cwd=cwd)
    run_git("checkout", ref, cwd=cwd)


def upload_images(image_dir: str, repository: str, pr_number: int, branch: str = IMAGE_BRANCH,
                  cwd: str = None, reporter: Reporter = None) -> dict[str, str]:
    """
    Commits every PNG in 'image_dir' to 'branch', under 'pr-<number>/', and
    pushes it. The branch is prepared in a temporary worktree, so the current
    checkout is left alone.

    Returns a map of image file name -> public URL.
    """
    reporter = reporter or get_reporter()
    reporter.info(f"Uploading images to branch {branch}...")

    images = sorted(name for name in os.listdir(image_dir) if name.endswith(".png"))
    if not images:
        reporter.info("No images to upload.")
        return {}

    remote = f"origin-{branch}"
    if remote not in run_git("remote", cwd=cwd).stdout.split():
        run_git("remote", "add", remote, f"https://github.com/{repository}.git", cwd=cwd)
    run_git("fetch", remote, cwd=cwd)

    worktree = tempfile.mkdtemp(prefix="mc-model-preview-")
    try:
        if run_git("ls-remote", "--heads", remote, branch, cwd=cwd).stdout.strip():
            run_git("worktree", "add", "-B", branch, worktree, f"{remote}/{branch}", cwd=cwd)
        else:
            run_git("branch", "-D", branch, cwd=cwd, check=False)
            run_git("worktree", "add", "--detach", worktree, cwd=cwd)
            run_git("checkout", "--orphan", branch, cwd=worktree)
            run_git("rm", "-r", "-q", "-f", "--ignore-unmatch", ".", cwd=worktree)

        run_git("config", "user.name", BOT_NAME, cwd=worktree)
        run_git("config", "user.email", BOT_EMAIL, cwd=worktree)

        folder = f"pr-{pr_number}"
        os.makedirs(os.path.join(worktree, folder), exist_ok=True)
        for image in images:
            shutil.copy2(os.path.join(image_dir, image), os.path.join(worktree, folder, image))
            run_git("add", "-f", f"{folder}/{image}", cwd=worktree)

        run_git("commit", "-m", f"Add images for PR #{pr_number}", cwd=worktree)
        run_git("push", "-u", remote, branch, cwd=worktree)
        sha = run_git("rev-parse", "HEAD", cwd=worktree).stdout.strip()
    finally:
        run_git("worktree", "remove", "--force", worktree, cwd=cwd, check=False)
        shutil.rmtree(worktree, ignore_errors=True)

    reporter.info("Image upload complete.")
    return {
        image: RAW_URL.format(repository=repository, sha=sha, path=f"{folder}/{image}")
        for image in images
    }
