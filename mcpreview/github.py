"""
GitHub collaborator: the pull request context of the running workflow, and a
small REST client for listing changed files and posting comments.
"""

from __future__ import annotations

import os
import json

from dataclasses import dataclass
from typing import Optional

import requests

from .core import GitHubError, ConfigurationError
from .reporting import Reporter, get_reporter

API_URL = "https://api.github.com"
PAGE_SIZE = 100
TIMEOUT = 30

# Changed files reported when running locally under 'act'.
ACT_CHANGED_FILES = ["test-data/creeper_pack/models/entity/creeper.geo.json"]


@dataclass
class ActionContext:
    """
    What the workflow run knows about the pull request it was started for.
    """
    repository: str = ""
    pr_number: Optional[int] = None
    base_ref: Optional[str] = None
    head_ref: Optional[str] = None
    workspace: str = "."
    act: bool = False

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split("/", 1)[-1]

    @classmethod
    def from_environment(cls, environ: dict = None) -> ActionContext:
        """
        Reads GITHUB_REPOSITORY, GITHUB_WORKSPACE, ACT and the event payload
        at GITHUB_EVENT_PATH.
        """
        environ = os.environ if environ is None else environ

        payload = {}
        event_path = environ.get("GITHUB_EVENT_PATH")
        if event_path and os.path.isfile(event_path):
            with open(event_path, "r", encoding="utf8") as event_file:
                payload = json.load(event_file)

        pull_request = payload.get("pull_request") or {}
        number = pull_request.get("number") or payload.get("number")

        return cls(
            repository = environ.get("GITHUB_REPOSITORY", ""),
            pr_number = int(number) if number else None,
            base_ref = (pull_request.get("base") or {}).get("ref"),
            head_ref = (pull_request.get("head") or {}).get("ref"),
            workspace = environ.get("GITHUB_WORKSPACE") or os.getcwd(),
            act = bool(environ.get("ACT")),
        )

    def require_refs(self) -> tuple[str, str]:
        if not self.base_ref or not self.head_ref:
            raise ConfigurationError("Could not get base and head refs from pull request context.")
        return self.base_ref, self.head_ref


class GitHubClient():
    """
    Minimal GitHub REST API client.
    """
    def __init__(self, token: str, api_url: str = API_URL, session: requests.Session = None):
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "mc-model-preview",
        })
        if token:
            self.session.headers["Authorization"] = f"token {token}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        response = self.session.request(method, f"{self.api_url}{path}", timeout=TIMEOUT, **kwargs)
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise GitHubError(response.status_code, message)
        return response

    def list_pull_request_files(self, repository: str, number: int) -> list[str]:
        """
        Returns the names of every file changed by the pull request.
        """
        files = []
        page = 1
        while True:
            response = self._request(
                "GET",
                f"/repos/{repository}/pulls/{number}/files",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            batch = response.json()
            files.extend(entry["filename"] for entry in batch)
            if len(batch) < PAGE_SIZE:
                return files
            page += 1

    def create_comment(self, repository: str, number: int, body: str) -> dict:
        response = self._request(
            "POST",
            f"/repos/{repository}/issues/{number}/comments",
            json={"body": body},
        )
        return response.json()


def get_changed_files(context: ActionContext, client: GitHubClient, reporter: Reporter = None) -> list[str]:
    """
    Returns the repository relative paths changed by the pull request.
    """
    reporter = reporter or get_reporter()

    if context.act:
        reporter.info("Act environment detected, returning mock changed files.")
        return list(ACT_CHANGED_FILES)

    if not context.pr_number:
        reporter.warning("Could not get pull request number from context, exiting")
        return []

    return client.list_pull_request_files(context.repository, context.pr_number)
