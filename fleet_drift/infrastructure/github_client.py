"""GitHub API client (GraphQL listing, REST issues and contents) with rate-limit signalling and retry logic."""

import time
import logging
import os
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import quote

import requests

from fleet_drift.domain.errors import FatalConfigurationError, RateLimitExceeded
from fleet_drift.domain.markers import matches_key, parse_finding
from fleet_drift.domain.models import DetectorKind, IssueKey, IssueScope, IssueState, TrackingIssue
from fleet_drift.domain.repository import Repository
from datetime import datetime

logger = logging.getLogger(__name__)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GitHubClient:
    """Client for the GitHub GraphQL and REST APIs."""

    # Rate limits are not waited out here: a RateLimitExceeded carrying the
    # server's retry-after goes up to the shared retry policy.
    # Transient network failures are retried here with exponential backoff.

    DEFAULT_API_URL = "https://api.github.com"
    MAX_RETRIES = 5
    RETRY_DELAY_SECONDS = 1
    PAGE_SIZE = 100
    MAX_ISSUE_PAGES = 10
    ISSUE_REPOSITORY_PAGE_SIZE = 50
    ISSUE_PAGE_SIZE = 20

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        """
        Initialize GitHub client.

        Args:
            token: GitHub token. If None, uses GITHUB_TOKEN env var.
            api_url: REST base URL. If None, uses GITHUB_API_URL or api.github.com.
            session: requests session to reuse (one is created if None)
            sleep: Sleep function used between transient-failure retries
        """
        if token is None:
            token = os.getenv("GITHUB_TOKEN")
        if api_url is None:
            api_url = os.getenv("GITHUB_API_URL", self.DEFAULT_API_URL)

        self.token = token
        self.api_url = api_url.rstrip("/")
        self.graphql_url = f"{self.api_url}/graphql"
        self.session = session or requests.Session()
        self._sleep = sleep
        self.last_cursor: Optional[str] = None
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "fleet-drift",
        }

        # Add authorization header if token is available
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"

    @staticmethod
    def _rate_limit_delay(response: requests.Response) -> Optional[float]:
        """Seconds to wait if response is a rate-limit rejection, else None."""
        if response.status_code not in (403, 429):
            return None
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                return float(retry_after)
            except ValueError:
                return 60.0
        if response.headers.get("X-RateLimit-Remaining") == "0":
            reset_time = int(response.headers.get("X-RateLimit-Reset", 0))
            return float(max(reset_time - int(time.time()), 0) + 1)
        if response.status_code == 429 or "rate limit" in response.text.lower():
            return 60.0
        return None

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Send a request, retrying transient network failures.

        Raises:
            RateLimitExceeded: If GitHub rejected the request for rate limiting
            FatalConfigurationError: If authentication failed
            requests.RequestException: If the request fails after retries
        """
        headers = dict(self.headers)
        headers.update(kwargs.pop("headers", {}))

        for attempt in range(self.MAX_RETRIES):
            try:
                response = self.session.request(method, url, headers=headers, timeout=30, **kwargs)
            except requests.exceptions.RequestException as e:
                if attempt < self.MAX_RETRIES - 1:
                    delay = self.RETRY_DELAY_SECONDS * (2 ** attempt)  # Exponential backoff
                    logger.warning(f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. Retrying in {delay}s...")
                    self._sleep(delay)
                    continue
                raise

            if response.status_code == 401:
                raise FatalConfigurationError("Authentication failed. Check your GitHub token.")
            delay = self._rate_limit_delay(response)
            if delay is not None:
                raise RateLimitExceeded(f"Rate limit exceeded for {method} {url}", retry_after=delay)
            if response.status_code >= 500 and attempt < self.MAX_RETRIES - 1:
                delay = self.RETRY_DELAY_SECONDS * (2 ** attempt)
                logger.warning(f"Server error {response.status_code} for {method} {url}. Retrying in {delay}s...")
                self._sleep(delay)
                continue
            return response

        raise requests.exceptions.RetryError(f"Max retries exceeded for {method} {url}")

    def _execute_query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL query.

        Args:
            query: GraphQL query string
            variables: Query variables

        Returns:
            GraphQL response data

        Raises:
            RateLimitExceeded: If rate limit is exceeded
            requests.RequestException: If request fails after retries
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        response = self._request("POST", self.graphql_url, json=payload)
        response.raise_for_status()
        data = response.json()

        # Check for GraphQL errors
        if data.get("errors"):
            error_messages = [err.get("message", "") for err in data["errors"]]
            if any("rate limit" in msg.lower() for msg in error_messages):
                raise RateLimitExceeded(f"Rate limit exceeded: {error_messages}", retry_after=60.0)
            if any(err.get("type") == "NOT_FOUND" for err in data["errors"]):
                raise LookupError(f"GraphQL not found: {error_messages}")
            raise requests.exceptions.RequestException(f"GraphQL errors: {error_messages}")

        return data.get("data") or {}

    def _repository_from_node(self, node: Dict[str, Any]) -> Repository:
        owner, name = node["nameWithOwner"].split("/", 1)
        primary = node.get("primaryLanguage") or {}
        languages = tuple(
            item["name"] for item in ((node.get("languages") or {}).get("nodes") or []) if item
        )
        return Repository(
            owner=owner,
            name=name,
            is_fork=bool(node.get("isFork")),
            is_archived=bool(node.get("isArchived")),
            primary_language=primary.get("name"),
            languages=languages,
            pushed_at=_parse_datetime(node.get("pushedAt")),
            url=node.get("url", ""),
        )

    _REPOSITORY_FIELDS = """
        nameWithOwner
        isFork
        isArchived
        pushedAt
        url
        primaryLanguage { name }
        languages(first: 20, orderBy: {field: SIZE, direction: DESC}) { nodes { name } }
    """

    def list_repositories(self, organizations: Iterable[str], cursor: Optional[str] = None) -> Iterator[Repository]:
        """
        Lazily list every repository of the given organizations.

        Args:
            organizations: Organization logins, scanned in order
            cursor: Resume point from a previous listing ("org:endCursor")

        Yields:
            Repository entities; self.last_cursor tracks the resume point

        Raises:
            FatalConfigurationError: If an organization cannot be listed
        """
        query = """
        query($org: String!, $limit: Int!, $cursor: String) {
            organization(login: $org) {
                repositories(first: $limit, after: $cursor, orderBy: {field: NAME, direction: ASC}) {
                    pageInfo {
                        hasNextPage
                        endCursor
                    }
                    nodes {
                        %s
                    }
                }
            }
        }
        """ % self._REPOSITORY_FIELDS

        orgs = list(organizations)
        resume_org, page_cursor = None, None
        if cursor:
            resume_org, _, page_cursor = cursor.partition(":")
            if resume_org not in orgs:
                raise FatalConfigurationError(f"Cursor organization {resume_org} is not in {orgs}")
            orgs = orgs[orgs.index(resume_org):]

        for org in orgs:
            after = page_cursor if org == resume_org else None
            while True:
                try:
                    data = self._execute_query(query, {"org": org, "limit": self.PAGE_SIZE, "cursor": after})
                except LookupError as e:
                    raise FatalConfigurationError(f"Organization {org} cannot be listed: {e}") from e
                organization = data.get("organization")
                if organization is None:
                    raise FatalConfigurationError(f"Organization {org} not found")

                repositories = organization.get("repositories") or {}
                for node in repositories.get("nodes") or []:
                    if node:
                        yield self._repository_from_node(node)

                page_info = repositories.get("pageInfo") or {}
                if not page_info.get("hasNextPage"):
                    break
                after = page_info.get("endCursor")
                self.last_cursor = f"{org}:{after}"
                logger.debug(f"Listing {org}: next page {after}")

    def get_repository(self, owner: str, name: str) -> Repository:
        """Fetch fresh metadata for exactly one repository."""
        query = """
        query($owner: String!, $name: String!) {
            repository(owner: $owner, name: $name) {
                %s
            }
        }
        """ % self._REPOSITORY_FIELDS
        data = self._execute_query(query, {"owner": owner, "name": name})
        node = data.get("repository")
        if node is None:
            raise LookupError(f"Repository {owner}/{name} not found")
        return self._repository_from_node(node)

    def read_file(self, owner: str, name: str, path: str) -> Optional[bytes]:
        url = f"{self.api_url}/repos/{owner}/{name}/contents/{quote(path)}"
        response = self._request("GET", url, headers={"Accept": "application/vnd.github.raw+json"})
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.content

    def _to_issue(self, key: IssueKey, item: Dict[str, Any]) -> TrackingIssue:
        body = item.get("body") or ""
        return TrackingIssue(
            key=key,
            number=int(item["number"]),
            state=IssueState.OPEN if item.get("state") == "open" else IssueState.CLOSED,
            body=body,
            last_synced_finding=parse_finding(body) if key.scope is IssueScope.REPOSITORY else None,
            url=item.get("html_url", ""),
        )

    @staticmethod
    def _has_label(item: Dict[str, Any], label: str) -> bool:
        return any((entry or {}).get("name") == label for entry in item.get("labels") or [])

    def find_issue(self, key: IssueKey) -> Optional[TrackingIssue]:
        """
        Find the tracking issue for an exact key.

        Issues are filtered by label, then the identity marker in the body must
        equal the key exactly. An open issue wins over closed ones; otherwise
        the most recently created closed issue is returned.
        """
        url = f"{self.api_url}/repos/{key.owner}/{key.name}/issues"
        latest_closed: Optional[TrackingIssue] = None
        for page in range(1, self.MAX_ISSUE_PAGES + 1):
            response = self._request(
                "GET",
                url,
                params={
                    "labels": key.label,
                    "state": "all",
                    "sort": "created",
                    "direction": "desc",
                    "per_page": self.PAGE_SIZE,
                    "page": page,
                },
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            items = response.json()
            for item in items:
                if "pull_request" in item or not self._has_label(item, key.label):
                    continue
                if not matches_key(item.get("body"), key):
                    continue
                issue = self._to_issue(key, item)
                if issue.is_open:
                    return issue
                if latest_closed is None:
                    latest_closed = issue
            if len(items) < self.PAGE_SIZE:
                break
        return latest_closed

    def create_issue(self, key: IssueKey, title: str, body: str) -> TrackingIssue:
        url = f"{self.api_url}/repos/{key.owner}/{key.name}/issues"
        response = self._request("POST", url, json={"title": title, "body": body, "labels": [key.label]})
        response.raise_for_status()
        return self._to_issue(key, response.json())

    def update_issue(self, issue: TrackingIssue, body: str) -> TrackingIssue:
        url = f"{self.api_url}/repos/{issue.key.owner}/{issue.key.name}/issues/{issue.number}"
        response = self._request("PATCH", url, json={"body": body})
        response.raise_for_status()
        return self._to_issue(issue.key, response.json())

    def close_issue(self, issue: TrackingIssue) -> TrackingIssue:
        url = f"{self.api_url}/repos/{issue.key.owner}/{issue.key.name}/issues/{issue.number}"
        response = self._request("PATCH", url, json={"state": "closed", "state_reason": "completed"})
        response.raise_for_status()
        return self._to_issue(issue.key, response.json())

    _OPEN_ISSUE_FIELDS = """
        totalCount
        pageInfo {
            hasNextPage
            endCursor
        }
        nodes {
            number
            state
            body
            url
            labels(first: 20) { nodes { name } }
        }
    """

    @staticmethod
    def _issue_item(node: Dict[str, Any]) -> Dict[str, Any]:
        """Reshape a GraphQL issue node into the REST item shape."""
        return {
            "number": node["number"],
            "state": (node.get("state") or "").lower(),
            "body": node.get("body") or "",
            "html_url": node.get("url", ""),
            "labels": (node.get("labels") or {}).get("nodes") or [],
        }

    def _remaining_open_issues(self, owner: str, name: str, label: str, after: str) -> List[Dict[str, Any]]:
        query = """
        query($owner: String!, $name: String!, $labels: [String!], $limit: Int!, $cursor: String) {
            repository(owner: $owner, name: $name) {
                issues(first: $limit, after: $cursor, labels: $labels, states: OPEN) {
                    %s
                }
            }
        }
        """ % self._OPEN_ISSUE_FIELDS
        nodes: List[Dict[str, Any]] = []
        while after:
            data = self._execute_query(
                query,
                {"owner": owner, "name": name, "labels": [label], "limit": self.PAGE_SIZE, "cursor": after},
            )
            issues = (data.get("repository") or {}).get("issues") or {}
            nodes.extend(node for node in issues.get("nodes") or [] if node)
            page_info = issues.get("pageInfo") or {}
            after = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return nodes

    def list_open_issues(self, kind: DetectorKind, organizations: Iterable[str]) -> List[TrackingIssue]:
        """
        List every open repository tracking issue of one detector.

        Walks every repository of the organizations and reads its open issues
        with the detector label through GraphQL, which reflects writes made
        earlier in the same run. Only issues carrying the exact label and an
        identity marker that matches the repository they live in are returned.

        Raises:
            FatalConfigurationError: If an organization cannot be listed
            RuntimeError: If fewer issues were read than GitHub reports open
        """
        label = IssueKey("", "", kind).label
        query = """
        query($org: String!, $limit: Int!, $cursor: String, $labels: [String!], $issueLimit: Int!) {
            organization(login: $org) {
                repositories(first: $limit, after: $cursor, orderBy: {field: NAME, direction: ASC}) {
                    pageInfo {
                        hasNextPage
                        endCursor
                    }
                    nodes {
                        nameWithOwner
                        issues(first: $issueLimit, labels: $labels, states: OPEN) {
                            %s
                        }
                    }
                }
            }
        }
        """ % self._OPEN_ISSUE_FIELDS

        issues: List[TrackingIssue] = []
        orgs = list(organizations)
        for org in orgs:
            after = None
            while True:
                try:
                    data = self._execute_query(query, {
                        "org": org,
                        "limit": self.ISSUE_REPOSITORY_PAGE_SIZE,
                        "cursor": after,
                        "labels": [label],
                        "issueLimit": self.ISSUE_PAGE_SIZE,
                    })
                except LookupError as e:
                    raise FatalConfigurationError(f"Organization {org} cannot be listed: {e}") from e
                organization = data.get("organization")
                if organization is None:
                    raise FatalConfigurationError(f"Organization {org} not found")

                repositories = organization.get("repositories") or {}
                for node in repositories.get("nodes") or []:
                    if node:
                        issues.extend(self._open_issues_of(node, kind, label))

                page_info = repositories.get("pageInfo") or {}
                if not page_info.get("hasNextPage"):
                    break
                after = page_info.get("endCursor")
        logger.info(f"Found {len(issues)} open {label} issues across {len(orgs)} organizations")
        return issues

    def _open_issues_of(self, node: Dict[str, Any], kind: DetectorKind, label: str) -> List[TrackingIssue]:
        owner, name = node["nameWithOwner"].split("/", 1)
        connection = node.get("issues") or {}
        nodes = [issue for issue in connection.get("nodes") or [] if issue]
        page_info = connection.get("pageInfo") or {}
        if page_info.get("hasNextPage"):
            nodes.extend(self._remaining_open_issues(owner, name, label, page_info.get("endCursor")))

        total = connection.get("totalCount", len(nodes))
        if len(nodes) < total:
            raise RuntimeError(f"Read {len(nodes)} of {total} open {label} issues in {owner}/{name}")

        key = IssueKey(owner, name, kind)
        found = []
        for issue_node in nodes:
            item = self._issue_item(issue_node)
            if item["state"] != "open" or not self._has_label(item, label):
                continue
            if not matches_key(item["body"], key):
                continue
            found.append(self._to_issue(key, item))
        return found

    def find_pull_request(self, owner: str, name: str, branch_prefix: str) -> Optional[str]:
        response = self._request(
            "GET",
            f"{self.api_url}/repos/{owner}/{name}/pulls",
            params={"state": "open", "per_page": self.PAGE_SIZE},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        for pull in response.json():
            if ((pull.get("head") or {}).get("ref") or "").startswith(branch_prefix):
                return pull.get("html_url")
        return None
