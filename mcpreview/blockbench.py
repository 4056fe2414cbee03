"""
Blockbench support: converting an Entity into a Blockbench project document
(.bbmodel), and rendering project documents to PNG images with the
Blockbench desktop application in headless mode.
"""

from __future__ import annotations

import os
import stat
import uuid
import base64
import signal
import shutil
import subprocess

from typing import Any, Optional

import requests

from .core import *
from .pack import Entity
from .reporting import Reporter, get_reporter

BLOCKBENCH_VERSION = "4.11.0"
BLOCKBENCH_RELEASE_URL = "https://github.com/JannisX11/blockbench/releases/download/v{version}/Blockbench_{version}.AppImage"
EXTRACTED_DIRECTORY = "Blockbench_extracted"
DEFAULT_TIMEOUT = 120
ANIMATION_SNAPPING = 24
CHANNELS = ("rotation", "position", "scale")

RENDER_ARGUMENTS = [
    "--headless",
    "--no-sandbox",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-dev-shm-usage",
    "--disable-features=VizDisplayCompositor",
]
XVFB_ARGUMENTS = ["--auto-servernum", "--server-args=-screen 0 1280x720x24"]


def new_uuid() -> str:
    return str(uuid.uuid4())


# === Geometry ===

def _geometry_identifier(key: str) -> str:
    # Legacy keys can carry a parent, like 'geometry.a:geometry.b'
    return key.split(":", 1)[0]

def find_geometry(document: JsonDocument, identifier: str = None) -> dict:
    """
    Returns the geometry named 'identifier' from a geometry file, in either
    the modern list form or the legacy keyed form. Falls back to the first
    geometry in the file.

    raises:
        AssetNotFoundError if the file holds no geometry at all.
    """
    candidates = []
    if document.jsonpath_exists("minecraft:geometry"):
        for _, geometry in document.get_data_at("minecraft:geometry"):
            if isinstance(geometry, dict):
                name = JsonDocument(geometry).get_jsonpath("description/identifier", default="")
                candidates.append((name, geometry))
    elif isinstance(document.data, dict):
        for key, geometry in document.data.items():
            if key.startswith("geometry.") and isinstance(geometry, dict):
                candidates.append((key, geometry))

    if not candidates:
        raise AssetNotFoundError(f"No geometry found in {document.filepath}")

    for name, geometry in candidates:
        if identifier is not None and (name == identifier or _geometry_identifier(name) == _geometry_identifier(identifier)):
            return geometry
    return candidates[0][1]


def _mirror(vector, default=(0, 0, 0)) -> list:
    """
    Bedrock and Blockbench disagree on the direction of the X axis.
    """
    x, y, z = vector if vector else default
    return [-x, y, z]

def _mirror_rotation(vector) -> list:
    x, y, z = vector if vector else (0, 0, 0)
    return [-x, -y, z]


def convert_cube(cube: dict, bone_pivot: list) -> dict:
    """
    Converts a bedrock cube into a Blockbench 'cube' element.
    """
    origin = cube.get("origin", [0, 0, 0])
    size = cube.get("size", [0, 0, 0])
    start = [-(origin[0] + size[0]), origin[1], origin[2]]

    element = {
        "name": "cube",
        "box_uv": True,
        "rescale": False,
        "locked": False,
        "render_order": "default",
        "from": start,
        "to": [start[0] + size[0], start[1] + size[1], start[2] + size[2]],
        "autouv": 0,
        "color": 0,
        "inflate": cube.get("inflate", 0),
        "mirror_uv": bool(cube.get("mirror", False)),
        "origin": _mirror(cube["pivot"]) if "pivot" in cube else bone_pivot,
        "rotation": _mirror_rotation(cube.get("rotation")),
        "uv_offset": [0, 0],
        "faces": {},
        "type": "cube",
        "uuid": new_uuid(),
    }

    uv = cube.get("uv", [0, 0])
    if isinstance(uv, dict):
        element["box_uv"] = False
        for face, face_uv in uv.items():
            u, v = face_uv.get("uv", [0, 0])
            width, height = face_uv.get("uv_size", [0, 0])
            element["faces"][face] = {"uv": [u, v, u + width, v + height], "texture": 0}
    else:
        element["uv_offset"] = list(uv)

    return element


def convert_bones(geometry: dict) -> tuple[list, list, dict]:
    """
    Converts bedrock bones into Blockbench elements and an outliner tree.

    Returns the elements, the outliner, and a bone name -> group uuid map.
    """
    elements = []
    groups = {}
    bone_uuids = {}
    order = []

    for bone in geometry.get("bones", []):
        name = bone.get("name", "bone")
        pivot = _mirror(bone.get("pivot"))
        group = {
            "name": name,
            "origin": pivot,
            "rotation": _mirror_rotation(bone.get("rotation")),
            "bedrock_binding": bone.get("binding", ""),
            "color": 0,
            "uuid": new_uuid(),
            "export": True,
            "mirror_uv": bool(bone.get("mirror", False)),
            "isOpen": False,
            "locked": False,
            "visibility": True,
            "autouv": 0,
            "children": [],
        }
        for cube in bone.get("cubes", []):
            element = convert_cube(cube, pivot)
            element["name"] = name
            elements.append(element)
            group["children"].append(element["uuid"])

        groups[name] = (group, bone.get("parent"))
        bone_uuids[name] = group["uuid"]
        order.append(name)

    outliner = []
    for name in order:
        group, parent = groups[name]
        if parent in groups and parent != name:
            groups[parent][0]["children"].append(group)
        else:
            outliner.append(group)

    return elements, outliner, bone_uuids


# === Textures ===

def resolve_texture_path(root_dir: str, texture: str) -> Optional[str]:
    """
    Entity files declare textures with or without an extension. Returns the
    file on disk, or None.
    """
    candidates = [texture] + [f"{texture}.{extension}" for extension in TEXTURE_EXTENSIONS]
    for candidate in candidates:
        path = os.path.join(root_dir, candidate)
        if os.path.isfile(path):
            return path
    return None

def convert_texture(root_dir: str, texture: str) -> dict:
    path = resolve_texture_path(root_dir, texture)
    name = os.path.basename(path or texture)

    project_texture = {
        "path": os.path.abspath(path) if path else os.path.join(root_dir, texture),
        "name": name,
        "folder": "",
        "namespace": "",
        "id": os.path.splitext(os.path.basename(texture))[0],
        "particle": False,
        "render_mode": "default",
        "frame_time": 1,
        "frame_order": [],
        "visible": True,
        "saved": True,
        "uuid": new_uuid(),
        "relative_path": texture,
    }

    if path and path.lower().endswith(".png"):
        with open(path, "rb") as image:
            project_texture["source"] = "data:image/png;base64," + base64.b64encode(image.read()).decode("ascii")

    return project_texture


# === Animations ===

def _data_point(value) -> dict:
    if isinstance(value, (int, float, str)):
        return {"x": value, "y": value, "z": value}
    x, y, z = (list(value) + [0, 0, 0])[:3]
    return {"x": x, "y": y, "z": z}

def _keyframe(channel: str, time: float, value) -> dict:
    interpolation = "linear"
    if isinstance(value, dict):
        if value.get("lerp_mode") == "catmullrom":
            interpolation = "catmullrom"
        points = [value[key] for key in ("pre", "post") if key in value]
        data_points = [_data_point(point) for point in points] or [_data_point(0)]
    else:
        data_points = [_data_point(value)]

    return {
        "channel": channel,
        "data_points": data_points,
        "uuid": new_uuid(),
        "time": time,
        "color": -1,
        "interpolation": interpolation,
    }

def convert_keyframes(channel: str, value) -> list:
    """
    A channel is either a constant (list, number, molang string), or a
    timeline of 'time': value pairs.
    """
    if isinstance(value, dict) and not {"pre", "post"} & value.keys():
        keyframes = []
        for time, point in value.items():
            try:
                keyframes.append(_keyframe(channel, float(time), point))
            except ValueError:
                continue
        return keyframes
    return [_keyframe(channel, 0, value)]

def _loop_mode(loop) -> str:
    if loop is True or loop == "true":
        return "loop"
    if loop == "hold_on_last_frame":
        return "hold"
    return "once"

def convert_animation(name: str, animation: dict, bone_uuids: dict) -> dict:
    animators = {}
    for bone_name, channels in animation.get("bones", {}).items():
        keyframes = []
        for channel in CHANNELS:
            if channel in channels:
                keyframes.extend(convert_keyframes(channel, channels[channel]))

        animator_uuid = bone_uuids.get(bone_name) or new_uuid()
        animators[animator_uuid] = {
            "name": bone_name,
            "type": "bone",
            "keyframes": keyframes,
        }

    return {
        "uuid": new_uuid(),
        "name": name,
        "loop": _loop_mode(animation.get("loop", False)),
        "override": bool(animation.get("override_previous_animation", False)),
        "length": animation.get("animation_length", 0),
        "snapping": ANIMATION_SNAPPING,
        "selected": False,
        "anim_time_update": "",
        "blend_weight": "",
        "start_delay": "",
        "loop_delay": "",
        "animators": animators,
    }


# === Projects ===

def create_project(entity: Entity, root_dir: str) -> dict:
    """
    Builds a Blockbench project document for 'entity', from its first geometry
    file, and all of its textures and animations.

    raises:
        AssetNotFoundError if the entity has no geometry, or a file is missing.
        InvalidJsonError if a file cannot be parsed, or holds malformed geometry
        or animation data.
    """
    if not entity.geometry_files:
        raise AssetNotFoundError(f"Entity {entity.identifier} has no resolved geometry.")

    try:
        return _build_project(entity, root_dir)
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exception:
        raise InvalidJsonError(f"Malformed model data for {entity.identifier}: {exception!r}") from exception

def _build_project(entity: Entity, root_dir: str) -> dict:
    identifier = entity.geometry_identifiers[0] if entity.geometry_identifiers else None
    geometry = find_geometry(JsonDocument.load(root_dir, entity.geometry_files[0]), identifier)
    description = JsonDocument(geometry)

    elements, outliner, bone_uuids = convert_bones(geometry)
    textures = [convert_texture(root_dir, texture) for texture in entity.texture_files]

    animations = []
    # Several animations of an entity usually live in the same file
    for animation_file in dict.fromkeys(entity.animation_files):
        document = JsonDocument.load(root_dir, animation_file)
        for name, animation in document.get_data_at("animations"):
            if isinstance(animation, dict):
                animations.append(convert_animation(name, animation, bone_uuids))

    model_identifier = _geometry_identifier(identifier or description.get_jsonpath("description/identifier", default=""))
    if model_identifier.startswith("geometry."):
        model_identifier = model_identifier[len("geometry."):]

    return {
        "meta": {
            "format_version": "4.0",
            "model_format": "bedrock",
            "box_uv": all(element["box_uv"] for element in elements),
        },
        "name": entity.identifier,
        "model_identifier": model_identifier,
        "resolution": {
            "width": description.get_jsonpath("description/texture_width", default=geometry.get("texturewidth", 16)),
            "height": description.get_jsonpath("description/texture_height", default=geometry.get("textureheight", 16)),
        },
        "elements": elements,
        "outliner": outliner,
        "textures": textures,
        "animations": animations,
    }

def save_project(project: dict, filepath: str):
    save_json(filepath, project)


# === Rendering ===

class Renderer():
    """
    Turns a project document into image bytes.
    """

    def render(self, project: dict, name: str) -> bytes:
        """
        raises:
            RenderError if no image could be produced.
        """
        raise NotImplementedError()


class BlockbenchInstallation():
    """
    A Blockbench AppImage, and optionally its extracted contents, inside
    'directory'.
    """
    def __init__(self, directory: str, version: str = BLOCKBENCH_VERSION):
        self.directory = directory
        self.version = version

    @property
    def app_image(self) -> str:
        return os.path.join(self.directory, f"Blockbench_{self.version}.AppImage")

    @property
    def extracted_directory(self) -> str:
        return os.path.join(self.directory, EXTRACTED_DIRECTORY)

    @property
    def app_run(self) -> str:
        return os.path.join(self.extracted_directory, "AppRun")

    def has_app_run(self) -> bool:
        return os.path.isfile(self.app_run)

    def install(self, reporter: Reporter = None, session: requests.Session = None) -> BlockbenchInstallation:
        """
        Downloads and extracts the AppImage. Files already present are reused.
        """
        reporter = reporter or get_reporter()
        session = session or requests.Session()

        if not os.path.isfile(self.app_image):
            url = BLOCKBENCH_RELEASE_URL.format(version=self.version)
            reporter.info(f"Downloading Blockbench {self.version} from {url}")
            os.makedirs(self.directory, exist_ok=True)
            with session.get(url, stream=True, timeout=60) as response:
                response.raise_for_status()
                with open(self.app_image, "wb") as file_head:
                    for chunk in response.iter_content(chunk_size=1 << 20):
                        file_head.write(chunk)

        mode = os.stat(self.app_image).st_mode
        os.chmod(self.app_image, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        if not self.has_app_run():
            reporter.info("Extracting Blockbench AppImage...")
            try:
                subprocess.run(
                    [self.app_image, "--appimage-extract"],
                    cwd=self.directory,
                    check=True,
                    capture_output=True,
                    timeout=DEFAULT_TIMEOUT,
                )
                shutil.move(os.path.join(self.directory, "squashfs-root"), self.extracted_directory)
            except (OSError, subprocess.SubprocessError) as exception:
                # The AppImage can still run with --appimage-extract-and-run.
                reporter.warning(f"Could not extract Blockbench AppImage: {exception}")

        if self.has_app_run():
            os.chmod(self.app_run, os.stat(self.app_run).st_mode | stat.S_IXUSR)
        return self


def run_process_group(command: list, cwd: str = None, env: dict = None, timeout: float = None) -> subprocess.CompletedProcess:
    """
    Like subprocess.run(check=True, capture_output=True), but the command gets
    its own process group, and the whole group is killed on timeout.

    raises:
        subprocess.TimeoutExpired, subprocess.CalledProcessError, OSError
    """
    with subprocess.Popen(command, cwd=cwd, env=env, stdout=subprocess.PIPE,
                          stderr=subprocess.PIPE, start_new_session=True) as process:
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                # Group already exited
                pass
            process.communicate()
            raise

    if process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode, command, stdout, stderr)
    return subprocess.CompletedProcess(command, process.returncode, stdout, stderr)


class BlockbenchRenderer(Renderer):
    """
    Renders projects by running Blockbench headless. Several ways of starting
    Blockbench are tried in turn, each bounded by 'timeout' seconds.
    """
    def __init__(self, installation: BlockbenchInstallation, work_dir: str, timeout: float = DEFAULT_TIMEOUT, reporter: Reporter = None):
        self.installation = installation
        self.work_dir = work_dir
        self.timeout = timeout
        self.reporter = reporter or get_reporter()

    def strategies(self, project_path: str, output_path: str) -> list[tuple[list, Optional[str]]]:
        """
        Returns (command, cwd) pairs, in the order they should be tried.
        """
        arguments = RENDER_ARGUMENTS + [f"--project={project_path}", f"--export={output_path}", "--render"]
        xvfb = shutil.which("xvfb-run")
        app_run = self.installation.app_run
        app_image = self.installation.app_image
        extracted = self.installation.extracted_directory

        commands = []
        if self.installation.has_app_run():
            if xvfb:
                commands.append(([xvfb, *XVFB_ARGUMENTS, app_run, *arguments], extracted))
            commands.append(([app_run, *arguments], extracted))

        app_image_arguments = ["--appimage-extract-and-run", *arguments]
        if xvfb:
            commands.append(([xvfb, *XVFB_ARGUMENTS, app_image, *app_image_arguments], None))
        commands.append(([app_image, *app_image_arguments], None))
        return commands

    def _environment(self) -> dict:
        environment = dict(os.environ)
        environment["APPDIR"] = self.installation.extracted_directory
        environment["APPIMAGE"] = self.installation.app_image
        return environment

    def render(self, project: dict, name: str) -> bytes:
        os.makedirs(self.work_dir, exist_ok=True)
        project_path = os.path.abspath(os.path.join(self.work_dir, f"{name}.bbmodel"))
        output_path = os.path.abspath(os.path.join(self.work_dir, f"{name}.png"))
        save_project(project, project_path)

        failures = []
        for command, cwd in self.strategies(project_path, output_path):
            if os.path.exists(output_path):
                os.remove(output_path)
            try:
                run_process_group(command, cwd=cwd, env=self._environment(), timeout=self.timeout)
            except subprocess.TimeoutExpired:
                failures.append(f"{command[0]}: timeout after {self.timeout}s")
                continue
            except subprocess.CalledProcessError as exception:
                failures.append(f"{command[0]}: exit code {exception.returncode}")
                continue
            except OSError as exception:
                failures.append(f"{command[0]}: {exception}")
                continue

            if not os.path.isfile(output_path):
                failures.append(f"{command[0]}: no image written")
                continue

            with open(output_path, "rb") as image:
                return image.read()

        for failure in failures:
            self.reporter.verbose(f"Render attempt for {name} failed ({failure})")
        raise RenderError(f"Could not render {name}: " + "; ".join(failures))
