from __future__ import annotations


"""
Module which handles core functions: exceptions, tolerant json loading and
json-path access into loaded documents. Nothing in here knows about entities
or rendering.
"""

import os
import json

from pathlib import Path
from typing import Union, Any, Iterator, Tuple

import dpath

NO_ARGUMENT = object()
TEXTURE_EXTENSIONS = ["png", "jpg", "jpeg", "tga"]


# Exceptions
class PreviewException(Exception):
    """
    Base class for mc-model-preview exceptions.
    """

class AssetNotFoundError(PreviewException):
    """
    Called when attempting to access an asset that does not exist, for
    example a geometry file an entity refers to.
    """

class InvalidJsonError(PreviewException):
    """
    Called when a JSON file is invalid.
    """

class RenderError(PreviewException):
    """
    Called when the renderer could not produce an image for a project.
    """

class GitError(PreviewException):
    """
    Called when a git command fails.
    """

class GitHubError(PreviewException):
    """
    Called when the GitHub API answers with an error.
    """

    def __init__(self, status_code: int, message: str):
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code

class ConfigurationError(PreviewException):
    """
    Called when the run is missing required configuration, such as the pull
    request refs.
    """


# Methods
def create_nested_directory(path: str):
    """
    Creates a nested directory structure if it doesn't exist.
    """
    Path(path).parent.mkdir(parents=True, exist_ok=True)

def save_json(filepath, data):
    """
    Saves json to a filepath, creating nested directory if required.
    """
    create_nested_directory(filepath)
    with open(filepath, "w+", encoding="utf8") as file_head:
        return json.dump(data, file_head, indent=2, ensure_ascii=False)

def strip_comments(contents: str) -> str:
    """
    Removes '//' line comments and '/* */' block comments from a json string.
    Bedrock accepts both, the json module does not.
    """
    cleaned = ""
    for line in contents.splitlines(keepends=True):
        cleaned_line = line.split("//", 1)[0]
        if len(cleaned_line) > 0 and line.endswith("\n") and "\n" not in cleaned_line:
            cleaned_line += "\n"
        cleaned += cleaned_line

    while "/*" in cleaned:
        pre_comment, post_comment = cleaned.split("/*", 1)
        cleaned = pre_comment + post_comment.split("*/", 1)[-1]
    return cleaned

def load_json(filepath: str) -> Any:
    """
    Loads json from file. Falls back to comment stripping when the file is
    not strict json.

    raises:
        AssetNotFoundError if the file does not exist.
        InvalidJsonError if the file cannot be read or parsed.
    """
    if not os.path.exists(filepath):
        raise AssetNotFoundError(f"File not found: {filepath}")

    try:
        with open(filepath, "r", encoding="utf8") as fh:
            contents = fh.read()
    except (OSError, UnicodeDecodeError) as exception:
        raise InvalidJsonError(f"Could not read {filepath}: {exception}") from exception

    try:
        return json.loads(contents)
    except json.JSONDecodeError:
        pass

    try:
        return json.loads(strip_comments(contents))
    except json.JSONDecodeError as exception:
        raise InvalidJsonError(f"Could not parse {filepath}: {exception}") from exception

def relative_path(path: str, root: str) -> str:
    """
    Returns 'path' relative to 'root', always '/' separated so it can be
    compared with paths reported by git.
    """
    return os.path.relpath(path, root).replace(os.sep, "/")

def smart_compare(a, b) -> bool:
    """
    Compares to objects using ==, but if they can both be interpreted as
    path-like objects, it uses path comparison.
    """

    try:
        return Path(a) == Path(b)
    except TypeError:
        return a == b


class JsonDocument():
    """
    A loaded json file, with jsonpath style access to its data.

    Contains:
     - The data, as loaded
     - The filepath, relative to whatever root it was loaded from
    """

    def __init__(self, data: Union[dict, list], filepath: str = None) -> None:
        self.data = data
        self.filepath = filepath

    @classmethod
    def load(cls, root: str, local_path: str) -> JsonDocument:
        """
        Loads a document from 'local_path', which is relative to 'root'.
        """
        return cls(load_json(os.path.join(root, local_path)), filepath=local_path)

    def __repr__(self):
        return f"'{self.__class__.__name__}: {self.filepath}'"

    def __str__(self):
        return json.dumps(self.data, indent=2, ensure_ascii=False)

    def jsonpath_exists(self, json_path: str) -> bool:
        """
        Checks if a jsonpath exists
        """
        try:
            self.get_jsonpath(json_path)
            return True
        except AssetNotFoundError:
            return False

    def get_jsonpath(self, json_path, default=NO_ARGUMENT):
        """
        Gets value at jsonpath location.

        A default value may be provided, for missing keys.

        raises:
            AssetNotFoundError if the path does not exist.
        """
        try:
            return dpath.get(self.data, json_path)
        except (KeyError, ValueError, TypeError, IndexError) as exception:
            if default is not NO_ARGUMENT:
                return default
            raise AssetNotFoundError(
                f"Path {json_path} does not exist in {self.filepath}."
            ) from exception

    def get_data_at(self, json_path) -> Iterator[Tuple[str, Any]]:
        """
        Yields (key, value) pairs found at this jsonpath location.
        For a list, the key is the list index.
        For a dict, the key is the dict key.

        Missing data, or data which is neither a list nor a dict, yields
        nothing.
        """
        result = self.get_jsonpath(json_path, default={})

        if isinstance(result, dict):
            yield from result.items()
        elif isinstance(result, list):
            yield from enumerate(result)
