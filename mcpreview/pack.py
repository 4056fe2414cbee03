"""
Resource pack access: indexing geometries, animations and materials by
identifier, parsing client entity files into Entity records, and working out
which entities a set of changed files touches.
"""

from __future__ import annotations

import os
import glob

from dataclasses import dataclass, field
from functools import cached_property
from typing import Iterable, Optional

from .core import *
from .reporting import Reporter, get_reporter

ENTITY_DESCRIPTION_PATH = "minecraft:client_entity/description"


@dataclass(frozen=True)
class Entity:
    """
    One parsed client entity definition. Dependency paths are relative to the
    resource pack root, in declaration order.
    """
    identifier: str
    definition_file_path: str
    geometry_files: tuple = ()
    texture_files: tuple = ()
    animation_files: tuple = ()
    material_files: tuple = ()
    geometry_identifiers: tuple = ()

    @property
    def dependency_paths(self) -> set[str]:
        """
        The definition file, and every resolved dependency file.
        """
        return {
            self.definition_file_path,
            *self.geometry_files,
            *self.texture_files,
            *self.animation_files,
            *self.material_files,
        }


@dataclass
class ResourceMap:
    """
    Identifier -> defining file lookups. If two files declare the same
    identifier, the one visited last wins.
    """
    geometries: dict = field(default_factory=dict)
    animations: dict = field(default_factory=dict)
    materials: dict = field(default_factory=dict)


def glob_pack(root_dir: str, pattern: str) -> list[str]:
    """
    Returns the files matching 'pattern' under 'root_dir', relative to
    'root_dir' and sorted, so repeated scans visit files in the same order.
    """
    matches = glob.glob(os.path.join(root_dir, pattern), recursive=True)
    return sorted(relative_path(path, root_dir) for path in matches if os.path.isfile(path))


def _record(mapping: dict, identifier: str, local_path: str, kind: str, reporter: Reporter):
    previous = mapping.get(identifier)
    if previous is not None and previous != local_path:
        reporter.verbose(f"{kind} '{identifier}' from {previous} is redefined by {local_path}")
    mapping[identifier] = local_path


def _index_models(root_dir: str, resource_map: ResourceMap, reporter: Reporter):
    for local_path in glob_pack(root_dir, "**/models/**/*.json"):
        try:
            document = JsonDocument.load(root_dir, local_path)
            if not isinstance(document.data, dict):
                raise InvalidJsonError("expected a json object")

            if "minecraft:geometry" in document.data:
                if not isinstance(document.data["minecraft:geometry"], list):
                    raise InvalidJsonError("'minecraft:geometry' is not a list")
                for _, geometry in document.get_data_at("minecraft:geometry"):
                    identifier = JsonDocument(geometry).get_jsonpath("description/identifier", default=None)
                    if identifier:
                        _record(resource_map.geometries, identifier, local_path, "Geometry", reporter)
            else:
                # Legacy format, where geometries are top level keys
                keys = [key for key in document.data if key.startswith("geometry.")]
                if not keys:
                    raise InvalidJsonError("no 'minecraft:geometry' list or 'geometry.' keys")
                for key in keys:
                    _record(resource_map.geometries, key, local_path, "Geometry", reporter)
        except PreviewException as exception:
            reporter.warning(f"Could not parse model file {local_path}: {exception}")


def _index_animations(root_dir: str, resource_map: ResourceMap, reporter: Reporter):
    for local_path in glob_pack(root_dir, "**/animations/**/*.json"):
        try:
            document = JsonDocument.load(root_dir, local_path)
            if not isinstance(document.data, dict):
                raise InvalidJsonError("expected a json object")
            if not isinstance(document.get_jsonpath("animations", default=None), dict):
                raise InvalidJsonError("no 'animations' object")
            for identifier, _ in document.get_data_at("animations"):
                _record(resource_map.animations, identifier, local_path, "Animation", reporter)
        except PreviewException as exception:
            reporter.warning(f"Could not parse animation file {local_path}: {exception}")


def _index_materials(root_dir: str, resource_map: ResourceMap, reporter: Reporter):
    local_paths = glob_pack(root_dir, "**/materials/**/*.material")
    local_paths += glob_pack(root_dir, "**/materials/**/*.json")

    for local_path in local_paths:
        try:
            document = JsonDocument.load(root_dir, local_path)
            if not isinstance(document.data, dict):
                raise InvalidJsonError("expected a json object")
            for identifier in document.data:
                _record(resource_map.materials, identifier, local_path, "Material", reporter)

            # Vanilla style files nest materials as "name:parent" under 'materials'
            for key, _ in document.get_data_at("materials"):
                identifier = key.split(":", 1)[0]
                if identifier != "version":
                    _record(resource_map.materials, identifier, local_path, "Material", reporter)
        except PreviewException as exception:
            reporter.warning(f"Could not parse material file {local_path}: {exception}")


def build_resource_map(root_dir: str, reporter: Reporter = None) -> ResourceMap:
    """
    Scans the pack for model, animation and material files, and indexes every
    identifier they declare. Unparseable files are skipped with a warning.
    """
    reporter = reporter or get_reporter()
    if not os.path.isdir(root_dir):
        raise AssetNotFoundError(f"Resource pack directory not found: {root_dir}")

    resource_map = ResourceMap()
    _index_models(root_dir, resource_map, reporter)
    _index_animations(root_dir, resource_map, reporter)
    _index_materials(root_dir, resource_map, reporter)
    return resource_map


def _resolve(references: Iterable[tuple], mapping: dict) -> tuple[list, list]:
    """
    Resolves (role, identifier) pairs through 'mapping'. Unknown identifiers
    are dropped. Returns the resolved identifiers and their files.
    """
    identifiers, files = [], []
    for _, identifier in references:
        if isinstance(identifier, str) and identifier in mapping:
            identifiers.append(identifier)
            files.append(mapping[identifier])
    return identifiers, files


def parse_entity(document: JsonDocument, resource_map: ResourceMap) -> Optional[Entity]:
    """
    Builds an Entity from a client entity document. Returns None when the
    document has no client entity description.

    raises:
        InvalidJsonError if the description has no string identifier.
    """
    description = document.get_jsonpath(ENTITY_DESCRIPTION_PATH, default=None)
    if not isinstance(description, dict):
        return None

    description = JsonDocument(description, filepath=document.filepath)
    identifier = description.get_jsonpath("identifier", default=None)
    if not identifier:
        raise InvalidJsonError("client entity description has no identifier")
    if not isinstance(identifier, str):
        raise InvalidJsonError(f"client entity identifier must be a string, not {type(identifier).__name__}")

    geometry_identifiers, geometry_files = _resolve(description.get_data_at("geometry"), resource_map.geometries)
    _, animation_files = _resolve(description.get_data_at("animations"), resource_map.animations)
    _, material_files = _resolve(description.get_data_at("materials"), resource_map.materials)
    texture_files = [texture for _, texture in description.get_data_at("textures") if isinstance(texture, str)]

    return Entity(
        identifier = identifier,
        definition_file_path = document.filepath,
        geometry_files = tuple(geometry_files),
        texture_files = tuple(texture_files),
        animation_files = tuple(animation_files),
        material_files = tuple(material_files),
        geometry_identifiers = tuple(geometry_identifiers),
    )


def parse_entities(root_dir: str, resource_map: ResourceMap, reporter: Reporter) -> list[Entity]:
    entities = []
    for local_path in glob_pack(root_dir, "**/entity/**/*.json"):
        try:
            entity = parse_entity(JsonDocument.load(root_dir, local_path), resource_map)
        except PreviewException as exception:
            reporter.warning(f"Could not parse entity file {local_path}: {exception}")
            continue

        if entity is not None:
            entities.append(entity)
    return entities


def parse_resource_pack(root_dir: str, reporter: Reporter = None) -> list[Entity]:
    """
    Parses every client entity file in the pack into an Entity, with its
    dependencies resolved to files.
    """
    reporter = reporter or get_reporter()

    reporter.info("Building resource map...")
    resource_map = build_resource_map(root_dir, reporter=reporter)
    reporter.info(
        f"Found {len(resource_map.geometries)} geometries, {len(resource_map.animations)} animations "
        f"and {len(resource_map.materials)} materials."
    )

    reporter.info("Parsing entity files...")
    entities = parse_entities(root_dir, resource_map, reporter)
    reporter.info(f"Successfully parsed {len(entities)} entities.")
    return entities


def find_affected_entities(entities: Iterable[Entity], changed_paths: Iterable[str]) -> list[Entity]:
    """
    Returns the entities whose definition file, or any resolved dependency
    file, is among 'changed_paths'. Paths are compared as exact strings.

    Input order is kept. Duplicates are removed by identity, so two records
    sharing an identifier can both be returned.
    """
    changed = set(changed_paths)
    affected = []
    seen = set()

    for entity in entities:
        if id(entity) in seen:
            continue
        if entity.dependency_paths & changed:
            seen.add(id(entity))
            affected.append(entity)
    return affected


def filter_entities_by_identifier(entities: Iterable[Entity], identifiers: Iterable[str]) -> list[Entity]:
    """
    Returns the entities whose identifier is in 'identifiers', in input order.
    """
    wanted = set(identifiers)
    return [entity for entity in entities if entity.identifier in wanted]


def relativize_changed_paths(changed_paths: Iterable[str], pack_prefix: str) -> list[str]:
    """
    Re-bases repository relative paths onto the pack root. Paths outside the
    pack are dropped. An empty prefix means the pack is the repository root.
    """
    pack_prefix = pack_prefix.strip("/")
    if pack_prefix in ("", "."):
        return list(changed_paths)

    prefix = pack_prefix + "/"
    return [path[len(prefix):] for path in changed_paths if path.startswith(prefix)]


class ResourcePack():
    """
    A resource pack on disk. The resource map and the entities are read
    lazily, once.
    """
    def __init__(self, input_path: str, reporter: Reporter = None):
        # The input path is the path to the folder containing the pack.
        self.input_path: str = input_path
        self.reporter = reporter or get_reporter()

    def __repr__(self):
        return f"'{self.__class__.__name__}: {self.input_path}'"

    @cached_property
    def resource_map(self) -> ResourceMap:
        return build_resource_map(self.input_path, reporter=self.reporter)

    @cached_property
    def entities(self) -> list[Entity]:
        """
        Returns a list of Entities, as read from '**/entity/**/*.json'
        """
        return parse_entities(self.input_path, self.resource_map, self.reporter)

    def get_entity(self, identifier: str) -> Optional[Entity]:
        """
        Returns the first entity with this identifier, or None.
        """
        for entity in self.entities:
            if entity.identifier == identifier:
                return entity
        return None

    def get_entity_by_path(self, filepath: str) -> Optional[Entity]:
        """
        Returns the entity defined in 'filepath' (relative to the pack), or None.
        """
        for entity in self.entities:
            if smart_compare(entity.definition_file_path, filepath):
                return entity
        return None

    def affected_entities(self, changed_paths: Iterable[str]) -> list[Entity]:
        return find_affected_entities(self.entities, changed_paths)
