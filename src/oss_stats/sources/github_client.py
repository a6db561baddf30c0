from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator

import requests
from bs4 import BeautifulSoup

from oss_stats.config import (
    GITHUB_TOKEN,
    REQUEST_TIMEOUT_SECONDS,
    SCRAPE_MAX_ATTEMPTS,
    USER_AGENT,
)
from oss_stats.errors import ConfigurationError, UpstreamError
from oss_stats.models import GitHubStats

logger = logging.getLogger(__name__)

CONTRIBUTORS_SELECTOR = 'a[href$="/graphs/contributors"] > span.Counter'
DEPENDENTS_SELECTOR = 'a[href$="/network/dependents"] > span.Counter'


def parse_counter(html: str, selector: str) -> int | None:
    soup = BeautifulSoup(html, "html.parser")
    node = soup.select_one(selector)
    if node is None:
        return None
    raw = (node.get("title") or node.get_text() or "").replace(",", "").strip()
    try:
        return int(raw)
    except ValueError:
        return None


class GitHubClient:
    base_url = "https://api.github.com"
    web_url = "https://github.com"

    def __init__(
        self,
        token: str | None = GITHUB_TOKEN,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        scrape_workers: int = 4,
    ):
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep
        self.scrape_workers = scrape_workers
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT}
        )
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _require_token(self) -> None:
        if not self.token:
            raise ConfigurationError(
                "Missing GITHUB_TOKEN. Add GITHUB_TOKEN=<token> to .env before "
                "refreshing repository stats."
            )

    def _api_get(self, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.get(url, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamError(f"GitHub request to {url} failed: {exc}") from exc
        if response.ok:
            return response
        if (
            response.status_code == 403
            and response.headers.get("X-RateLimit-Remaining") == "0"
        ):
            reset_raw = response.headers.get("X-RateLimit-Reset")
            if reset_raw and reset_raw.isdigit():
                reset_at = datetime.fromtimestamp(int(reset_raw), tz=timezone.utc)
            else:
                reset_at = datetime.now(tz=timezone.utc) + timedelta(hours=1)
            raise UpstreamError(
                f"GitHub API rate limit exceeded. Resets at: {reset_at.isoformat()}",
                status_code=403,
            )
        raise UpstreamError(
            f"GitHub API error: {response.status_code} - {response.text[:200]}",
            status_code=response.status_code,
        )

    def get_repo(self, repo: str) -> dict[str, Any]:
        self._require_token()
        return self._api_get(f"{self.base_url}/repos/{repo}").json()

    def iter_org_repos(self, org: str, per_page: int = 100) -> Iterator[dict[str, Any]]:
        self._require_token()
        url = f"{self.base_url}/orgs/{org}/repos"
        page = 1
        while True:
            response = self._api_get(
                url, params={"per_page": per_page, "page": page, "sort": "stars"}
            )
            yield from response.json()
            if 'rel="next"' not in (response.headers.get("Link") or ""):
                break
            page += 1

    def scrape_counter(self, repo: str, selector: str) -> int | None:
        """Read one counter from the repository's HTML page, retrying with backoff.

        Returns ``None`` when every attempt fails; scraping never raises.
        """
        url = f"{self.web_url}/{repo}"
        for attempt in range(1, SCRAPE_MAX_ATTEMPTS + 1):
            try:
                response = self.session.get(
                    url,
                    headers={"Accept": "text/html"},
                    timeout=self.timeout_seconds,
                )
                if response.ok:
                    count = parse_counter(response.text, selector)
                    if count is not None:
                        return count
                    logger.debug(
                        "No counter %r on %s, attempt %s/%s",
                        selector,
                        repo,
                        attempt,
                        SCRAPE_MAX_ATTEMPTS,
                    )
                else:
                    logger.debug(
                        "Failed to fetch %s page (%s), attempt %s/%s",
                        repo,
                        response.status_code,
                        attempt,
                        SCRAPE_MAX_ATTEMPTS,
                    )
            except requests.RequestException as exc:
                logger.debug("Error scraping %s: %s", repo, exc)
            if attempt < SCRAPE_MAX_ATTEMPTS:
                self.sleep(2**attempt)
        logger.warning(
            "Failed to scrape %r for %s after %s attempts",
            selector,
            repo,
            SCRAPE_MAX_ATTEMPTS,
        )
        return None

    def fetch_repo_stats(self, repo: str) -> GitHubStats:
        payload = self.get_repo(repo)
        contributors = self.scrape_counter(repo, CONTRIBUTORS_SELECTOR)
        dependents = self.scrape_counter(repo, DEPENDENTS_SELECTOR)
        return GitHubStats(
            star_count=int(payload.get("stargazers_count") or 0),
            contributor_count=contributors or 0,
            dependent_count=dependents,
            fork_count=int(payload.get("forks_count") or 0),
        )

    def fetch_owner_stats(self, org: str) -> GitHubStats:
        repos = list(self.iter_org_repos(org))
        names = [str(repo["full_name"]) for repo in repos if repo.get("full_name")]

        def scrape(name: str) -> tuple[int, int]:
            contributors = self.scrape_counter(name, CONTRIBUTORS_SELECTOR)
            dependents = self.scrape_counter(name, DEPENDENTS_SELECTOR)
            return contributors or 0, dependents or 0

        with ThreadPoolExecutor(max_workers=self.scrape_workers) as executor:
            counts = list(executor.map(scrape, names))

        return GitHubStats(
            star_count=sum(int(repo.get("stargazers_count") or 0) for repo in repos),
            contributor_count=sum(contributors for contributors, _ in counts),
            dependent_count=sum(dependents for _, dependents in counts),
            fork_count=sum(int(repo.get("forks_count") or 0) for repo in repos),
            repository_count=len(repos),
        )
