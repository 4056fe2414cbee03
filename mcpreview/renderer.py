"""
The preview pipeline: find the entities a pull request affects, build
Blockbench projects for them at the base and head commits, render, upload the
images and comment on the pull request.
"""

from __future__ import annotations

import os

from typing import Callable, Iterable

from send2trash import send2trash

from .core import *
from .pack import (
    Entity,
    parse_resource_pack,
    find_affected_entities,
    filter_entities_by_identifier,
    relativize_changed_paths,
)
from .blockbench import Renderer, BlockbenchInstallation, BlockbenchRenderer, create_project
from .comment import ImageRow, to_safe_filename, build_rows, build_comment_body
from .config import Settings, resolve_pack_path, pack_prefix
from .git import checkout, upload_images
from .github import ActionContext, GitHubClient, get_changed_files
from .reporting import Reporter, get_reporter, section


def generate_projects(entities: Iterable[Entity], root_dir: str, side: str, reporter: Reporter = None) -> dict[str, dict]:
    """
    Builds a project per entity. Keys are '<safe identifier>.<side>'.
    Entities whose project cannot be built, or whose key is already taken by an
    earlier entity, are skipped with a warning.
    """
    reporter = reporter or get_reporter()
    projects = {}
    for entity in entities:
        try:
            project = create_project(entity, root_dir)
        except PreviewException as exception:
            reporter.warning(f"Skipping {entity.identifier} ({side}) due to error creating bbmodel: {exception}")
            continue

        key = f"{to_safe_filename(entity.identifier)}.{side}"
        if key in projects:
            reporter.warning(f"Skipping {entity.identifier} ({side}): another entity already renders to {key}.png")
            continue

        projects[key] = project
        reporter.info(f"Generated {side} bbmodel for {entity.identifier}")
    return projects


def clear_directory(path: str, reporter: Reporter = None):
    """
    Moves everything inside 'path' to the trash, and makes sure 'path' exists.
    Best effort: entries which cannot be removed are reported and left.
    """
    reporter = reporter or get_reporter()
    if os.path.isdir(path):
        for entry in os.listdir(path):
            try:
                send2trash(os.path.join(path, entry))
            except OSError as exception:
                reporter.warning(f"Could not clear {entry} from {path}: {exception}")
    os.makedirs(path, exist_ok=True)


def render_projects(projects: dict[str, dict], renderer: Renderer, image_dir: str, reporter: Reporter = None) -> list[str]:
    """
    Renders every project to '<image_dir>/<name>.png'. A failed render is a
    warning, and leaves that image out.

    Returns the names of the written images.
    """
    reporter = reporter or get_reporter()
    written = []
    for name, project in projects.items():
        try:
            image = renderer.render(project, name)
        except RenderError as exception:
            reporter.warning(f"Failed to render {name}: {exception}")
            continue

        image_path = os.path.join(image_dir, f"{name}.png")
        with open(image_path, "wb") as image_file:
            image_file.write(image)
        written.append(f"{name}.png")
        reporter.info(f"Rendered {name} to {image_path}")
    return written


def create_renderer(settings: Settings, reporter: Reporter = None) -> Renderer:
    installation = BlockbenchInstallation(settings.blockbench_directory, settings.blockbench_version)
    installation.install(reporter=reporter)
    return BlockbenchRenderer(
        installation,
        work_dir=os.path.join(settings.render_directory, "projects"),
        timeout=settings.render_timeout,
        reporter=reporter,
    )


def run(settings: Settings, context: ActionContext, client: GitHubClient = None, renderer: Renderer = None,
        reporter: Reporter = None, checkout_ref: Callable = checkout, upload: Callable = upload_images) -> list[ImageRow]:
    """
    Runs the whole preview for one pull request. Returns the rows that were
    posted.

    Collaborator failures (git, GitHub) propagate. Failures for a single
    entity or image are warnings.
    """
    reporter = reporter or get_reporter()
    client = client or GitHubClient(settings.github_token)
    reporter.info("Starting Minecraft Model Preview...")

    base_ref, head_ref = context.require_refs()
    workspace = context.workspace
    pack_path = resolve_pack_path(workspace, settings.resource_pack_path, reporter=reporter)
    reporter.info(f"Using resource pack path: {pack_path}")

    changed_files = get_changed_files(context, client, reporter=reporter)
    changed_files = relativize_changed_paths(changed_files, pack_prefix(workspace, pack_path))

    with section(f"Parsing head ({head_ref})", reporter):
        head_entities = parse_resource_pack(pack_path, reporter=reporter)
    affected = find_affected_entities(head_entities, changed_files)

    if not affected:
        reporter.info("No model changes detected in this pull request.")
        return []

    identifiers = [entity.identifier for entity in affected]
    reporter.info(f"Found {len(affected)} affected entities on HEAD ({head_ref}): {', '.join(identifiers)}")

    # Head projects are built before leaving the head commit.
    projects = generate_projects(affected, pack_path, "head", reporter=reporter)

    try:
        reporter.info(f"Checking out base branch: {base_ref}")
        checkout_ref(base_ref, cwd=workspace)
        with section(f"Parsing base ({base_ref})", reporter):
            try:
                base_entities = parse_resource_pack(pack_path, reporter=reporter)
            except AssetNotFoundError as exception:
                # The pull request adds the pack
                reporter.warning(f"No resource pack on base ({base_ref}), only after images are rendered: {exception}")
                base_entities = []
            base_entities = filter_entities_by_identifier(base_entities, identifiers)
        projects.update(generate_projects(base_entities, pack_path, "base", reporter=reporter))
    finally:
        reporter.info(f"Checking out head branch: {head_ref}")
        checkout_ref(head_ref, cwd=workspace)

    image_dir = settings.render_directory
    clear_directory(image_dir, reporter=reporter)

    with section("Rendering models with Blockbench", reporter):
        renderer = renderer or create_renderer(settings, reporter=reporter)
        render_projects(projects, renderer, image_dir, reporter=reporter)

    urls = upload(image_dir, context.repository, context.pr_number, branch=settings.image_branch, cwd=workspace, reporter=reporter)
    rows = build_rows(affected, urls)

    if not rows:
        reporter.warning("No images could be rendered, skipping the comment.")
        return rows

    reporter.info("Posting pull request comment...")
    client.create_comment(context.repository, context.pr_number, build_comment_body(rows))
    reporter.info("Rendering process complete.")
    return rows
