"""
mc-model-preview renders before/after previews of the Minecraft Bedrock
entities a pull request changes.
"""

from .pack import (
    Entity,
    ResourceMap,
    ResourcePack,
    build_resource_map,
    parse_resource_pack,
    find_affected_entities,
)
