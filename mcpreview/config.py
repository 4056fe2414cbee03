"""
Run configuration. Values come from the command line, or from the
'INPUT_*' environment variables GitHub Actions sets for action inputs.
"""

from __future__ import annotations

import os

from dataclasses import dataclass

from .core import relative_path
from .blockbench import BLOCKBENCH_VERSION, DEFAULT_TIMEOUT
from .git import IMAGE_BRANCH
from .reporting import Reporter, get_reporter


@dataclass
class Settings:
    github_token: str = ""
    resource_pack_path: str = "."
    blockbench_version: str = BLOCKBENCH_VERSION
    blockbench_directory: str = "."
    render_timeout: float = DEFAULT_TIMEOUT
    render_directory: str = "temp-render"
    image_branch: str = IMAGE_BRANCH


def resolve_pack_path(workspace: str, pack_input: str, reporter: Reporter = None) -> str:
    """
    Resolves the resource pack path against the workspace. A path which ends
    up outside the workspace falls back to the workspace root.
    """
    reporter = reporter or get_reporter()
    workspace = os.path.abspath(workspace)
    pack_path = os.path.abspath(os.path.join(workspace, pack_input or "."))

    if pack_path != workspace and not pack_path.startswith(workspace + os.sep):
        reporter.warning(
            f'Input resource-pack-path resolved outside workspace ("{pack_path}"). '
            f'Falling back to workspace root ("{workspace}").'
        )
        return workspace
    return pack_path


def pack_prefix(workspace: str, pack_path: str) -> str:
    """
    The pack directory relative to the workspace, '' for the workspace itself.
    """
    prefix = relative_path(os.path.abspath(pack_path), os.path.abspath(workspace))
    return "" if prefix == "." else prefix
