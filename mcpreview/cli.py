"""
Command line entry point. Inside a GitHub Actions workflow every option is
also read from the matching action input.
"""

from __future__ import annotations

import os
import sys

import click
import dotenv

from .blockbench import BLOCKBENCH_VERSION, DEFAULT_TIMEOUT
from .config import Settings
from .git import IMAGE_BRANCH
from .github import ActionContext
from .renderer import run
from .reporting import ActionsReporter, LoggingReporter, configure_logging, set_reporter


@click.command()
@click.option('--github-token', envvar='INPUT_GITHUB-TOKEN', default='', help='Token used for the GitHub API')
@click.option('--resource-pack-path', envvar='INPUT_RESOURCE-PACK-PATH', default='.', help='Resource pack directory, relative to the workspace')
@click.option('--blockbench-version', envvar='INPUT_BLOCKBENCH-VERSION', default=BLOCKBENCH_VERSION, help='Blockbench release to render with')
@click.option('--blockbench-directory', envvar='INPUT_BLOCKBENCH-DIRECTORY', default='.', help='Where Blockbench is installed')
@click.option('--render-timeout', envvar='INPUT_RENDER-TIMEOUT', type=float, default=DEFAULT_TIMEOUT, help='Seconds allowed per render')
@click.option('--render-directory', envvar='INPUT_RENDER-DIRECTORY', default='temp-render', help='Where projects and images are written')
@click.option('--image-branch', envvar='INPUT_IMAGE-BRANCH', default=IMAGE_BRANCH, help='Branch the images are pushed to')
@click.option('--verbose', '-v', count=True, help='Show debug output')
def main(github_token: str, resource_pack_path: str, blockbench_version: str, blockbench_directory: str,
         render_timeout: float, render_directory: str, image_branch: str, verbose: int):
    """
    Renders before/after previews of the entities a pull request changes, and
    comments them on the pull request.
    """
    configure_logging(verbose)
    if os.environ.get("GITHUB_ACTIONS") == "true":
        reporter = ActionsReporter(debug=verbose > 0)
    else:
        reporter = LoggingReporter()
    set_reporter(reporter)

    settings = Settings(
        github_token = github_token,
        resource_pack_path = resource_pack_path,
        blockbench_version = blockbench_version,
        blockbench_directory = blockbench_directory,
        render_timeout = render_timeout,
        render_directory = render_directory,
        image_branch = image_branch,
    )

    try:
        run(settings, ActionContext.from_environment(), reporter=reporter)
    except Exception as exception:
        reporter.error(str(exception))
        sys.exit(1)

    reporter.info("Action completed successfully.")


def entry_point():
    # A local .env is read before click resolves the environment.
    dotenv.load_dotenv()
    main()
