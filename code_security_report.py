#!/usr/bin/env python3
"""
===================================================================
PRISMA CLOUD CODE SECURITY REPORT EXPORTER
===================================================================

PURPOSE:
    Retrieves every branch-scan error reported by Prisma Cloud Code
    Security across all onboarded repositories, enriches each finding
    with repository metadata and per-resource policy details, and
    writes a single flat CSV report.

FEATURES:
    ✓ Async I/O with one shared concurrency bound for every fetch stage
    ✓ Repositories grouped by default branch and split across workers
    ✓ Offset/limit pagination drained per partition and per resource
    ✓ Shared API token refreshed on a request cadence, refreshes coalesced
    ✓ Work-unit deduplication before the per-resource detail fetch
    ✓ Explicit tie-break policy for repositories sharing a name
    ✓ Fixed-column CSV export with stable header order
    ✓ Optional on-disk artifacts and offline report rebuild
    ✓ Exponential backoff for transport failures only
    ✓ Structured JSON logging for observability

PIPELINE:
    1. Login and list repositories
    2. Group repositories by default branch, partition per worker
    3. Drain branch-scan error pages for every partition
    4. Join findings with repository metadata, dedupe into work units
    5. Drain policy details for every work unit
    6. Join details onto findings and export the CSV report

REQUIREMENTS:
    Install dependencies:
        pip install aiohttp aiofiles tqdm

USAGE:
    export PC_APIURL="https://api.prismacloud.io"
    export PC_ACCESSKEY="your-access-key"
    export PC_SECRETKEY="your-secret-key"
    python code_security_report.py

    # Keep intermediate pages and rebuild the report later
    python code_security_report.py --artifact-dir ./temp
    python code_security_report.py --from-artifacts ./temp

CONFIGURATION:
    Set via environment variables:
    - PC_APIURL: Prisma Cloud API base URL (required)
    - PC_ACCESSKEY / PC_SECRETKEY: Access key credentials (required)
    - NUM_WORKERS: Partitions per branch (default: 5)
    - MAX_PARALLEL_JOBS: Concurrent fetch tasks (default: 10)
    - PAGE_SIZE: Items per page request (default: 100)
    - TOKEN_REFRESH_INTERVAL: Requests between token refreshes (default: 100)
    - DETAIL_GROUP_SIZE: Work units per detail group (default: 1000)
    - REPORT_DIR: Directory for the CSV report (default: reports)
    - ARTIFACT_DIR: Persist intermediate pages here (default: disabled)
    - REPO_TIE_BREAK: first|last-scanned (default: first)
    - API_MAX_RETRIES: Attempts per request on transport errors (default: 3)
    - API_BACKOFF_BASE: Backoff base in seconds (default: 2.0)
    - REQUEST_TIMEOUT_SECONDS: Per-request timeout, 0 disables (default: 300)
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import csv
import functools
import json
import logging
import math
import os
import re
import shutil
import sys
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from tqdm import tqdm

# Third-party imports with error handling
try:
    import aiofiles
    import aiohttp
except ImportError as e:
    print(f"ERROR: Missing required dependency: {e}")
    print("Install with: pip install aiohttp aiofiles tqdm")
    sys.exit(1)

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

VERSION = "1.0.0"

# Environment-driven configuration
PC_APIURL = os.environ.get("PC_APIURL", "").rstrip("/")
PC_ACCESSKEY = os.environ.get("PC_ACCESSKEY", "")
PC_SECRETKEY = os.environ.get("PC_SECRETKEY", "")
NUM_WORKERS = int(os.environ.get("NUM_WORKERS", "5"))
MAX_PARALLEL_JOBS = int(os.environ.get("MAX_PARALLEL_JOBS", "10"))
PAGE_SIZE = int(os.environ.get("PAGE_SIZE", "100"))
TOKEN_REFRESH_INTERVAL = int(os.environ.get("TOKEN_REFRESH_INTERVAL", "100"))
DETAIL_GROUP_SIZE = int(os.environ.get("DETAIL_GROUP_SIZE", "1000"))
REPORT_DIR = Path(os.environ.get("REPORT_DIR", "reports"))
ARTIFACT_DIR = os.environ.get("ARTIFACT_DIR", "")
REPO_TIE_BREAK = os.environ.get("REPO_TIE_BREAK", "first")  # first|last-scanned
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json

# Transport
API_MAX_RETRIES = int(os.environ.get("API_MAX_RETRIES", "3"))
API_BACKOFF_BASE = float(os.environ.get("API_BACKOFF_BASE", "2.0"))
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "300"))

# API endpoints
LOGIN_ENDPOINT = "/login"
REPOSITORIES_ENDPOINT = "/code/api/v1/repositories"
BRANCH_SCAN_ENDPOINT = "/bridgecrew/api/v2/errors/branch_scan/resources"
POLICIES_ENDPOINT = BRANCH_SCAN_ENDPOINT + "/{resource_uuid}/policies"

CHECK_STATUS = "Error"
CODE_CATEGORIES = [
    "IacMisconfiguration", "Vulnerabilities", "Licenses", "Secrets", "Weaknesses"
]

TIE_BREAK_POLICIES = ("first", "last-scanned")

# Branch labels end up in artifact file names
BRANCH_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

# Fields kept from each branch-scan error item
FINDING_FIELDS = [
    "counter", "fixableIssuesCount", "resourceName", "resourceUuid", "filePath",
    "codeCategory", "repository", "severity", "sourceType", "frameworkType",
]

# Report column order is fixed; the CSV header is written from this list only
REPORT_COLUMNS = [
    "sourceType", "repository", "repoCreationDate", "repoLastScanDate",
    "repoDescription", "repoUrl", "codeCategory", "frameworkType", "severity",
    "scanBranch", "isPublic", "filePath", "resourceName", "resourceId",
    "iacResourceName", "issue", "violationId", "riskFactors", "cvss",
    "causePackageName", "causePackageId", "firstDetected", "containerImageName",
    "metaDataInfo", "secretsValidationStatus", "secretValidationCode",
    "secretCreateDate", "license",
]


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("worker", "branch", "unit_index", "record_count")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# ERRORS
# ===================================================================

class CodeSecurityError(Exception):
    """Base class for every error raised by the report pipeline."""


class AuthFailure(CodeSecurityError):
    """The login exchange did not yield a usable token. Fatal to the run."""


class ApiError(CodeSecurityError):
    """
    A response carried an error marker or could not be interpreted.

    Aborts only the pagination sequence that received it.
    """

    def __init__(self, message: str, status: Optional[int] = None, raw: str = ""):
        super().__init__(message)
        self.status = status
        self.raw = raw


class MissingField(CodeSecurityError):
    """A required identifier was empty; the unit or branch is skipped."""

    def __init__(self, fields: Iterable[str], context: str = ""):
        self.fields = list(fields)
        self.context = context
        message = f"Missing required field(s): {', '.join(self.fields)}"
        if context:
            message += f" ({context})"
        super().__init__(message)


class MalformedArtifact(CodeSecurityError):
    """An intermediate artifact could not be parsed."""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


# ===================================================================
# DATA MODEL
# ===================================================================

@dataclass
class Repository:
    """A repository onboarded to Code Security, as listed by the API."""
    id: str
    repository: str
    owner: str
    default_branch: Optional[str] = None
    source: str = ""
    is_public: Optional[bool] = None
    runs: Optional[int] = None
    creation_date: Optional[str] = None
    last_scan_date: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None

    @property
    def full_name(self) -> str:
        """Key findings use to reference their repository."""
        return f"{self.owner}/{self.repository}"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Repository":
        repo_id = data.get("id")
        return cls(
            id="" if repo_id is None else str(repo_id),
            repository=data.get("repository") or "",
            owner=data.get("owner") or "",
            default_branch=data.get("defaultBranch"),
            source=data.get("source") or "",
            is_public=data.get("isPublic"),
            runs=data.get("runs"),
            creation_date=data.get("creationDate"),
            last_scan_date=data.get("lastScanDate"),
            description=data.get("description"),
            url=data.get("url"),
        )

    def metadata(self) -> Dict[str, Any]:
        """Fields attached to every finding owned by this repository."""
        return {
            "repoId": self.id,
            "scanBranch": self.default_branch,
            "isPublic": self.is_public,
            "runs": self.runs,
            "repoCreationDate": self.creation_date,
            "repoLastScanDate": self.last_scan_date,
            "repoDescription": self.description,
            "repoUrl": self.url,
        }


@dataclass(frozen=True)
class Credential:
    """API token plus the generation counter of the login that issued it."""
    token: str
    generation: int
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Partition:
    """Repository ids of one branch assigned to a single worker."""
    worker_id: int
    branch: str
    repo_ids: Tuple[str, ...]

    @property
    def sanitized_branch(self) -> str:
        return sanitize_branch(self.branch)


@dataclass
class Page:
    """One response of a pagination sequence."""
    offset: int
    items: List[Dict[str, Any]]
    has_next: bool
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class WorkUnit:
    """
    A (resource, category) pair scheduled for the detail fetch.

    Units compare and hash on every field, so a set or dict of units
    holds one entry per composite key.
    """
    resource_uuid: str
    repo_id: str
    scan_branch: str
    code_category: str
    counter: Any = None

    REQUIRED_FIELDS = ("resource_uuid", "repo_id", "scan_branch", "code_category")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "WorkUnit":
        repo_id = record.get("repoId")
        return cls(
            resource_uuid=record.get("resourceUuid") or "",
            repo_id="" if repo_id is None else str(repo_id),
            scan_branch=record.get("scanBranch") or "",
            code_category=record.get("codeCategory") or "",
            counter=record.get("counter"),
        )

    @property
    def key(self) -> Tuple[Any, ...]:
        return (self.resource_uuid, self.repo_id, self.scan_branch, self.code_category, self.counter)

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]

    def validate(self, index: Optional[int] = None) -> None:
        missing = self.missing_fields()
        if missing:
            raise MissingField(missing, f"item {index}" if index is not None else "")


@dataclass
class PipelineStats:
    """Counters reported at the end of a run."""
    repositories: int = 0
    partitions: int = 0
    finding_pages: int = 0
    findings: int = 0
    joined_findings: int = 0
    work_units: int = 0
    skipped_units: int = 0
    details: int = 0
    records: int = 0
    token_logins: int = 0
    api_requests: int = 0
    peak_in_flight: int = 0

    def get_stats(self) -> Dict[str, int]:
        return asdict(self)


# ===================================================================
# AUTHENTICATION
# ===================================================================

class TokenManager:
    """
    Owns the single live API credential shared by every fetch task.

    The credential is replaced as a whole under a lock, so readers see
    either the previous or the new token. Callers that detect an expired
    cadence pass the credential they observed as ``stale``; when another
    task has already replaced it, no second login happens.
    """

    def __init__(
        self,
        login: Callable[[], Awaitable[str]],
        refresh_interval: int = TOKEN_REFRESH_INTERVAL
    ):
        """
        Args:
            login: Coroutine function performing the login exchange, returning the token
            refresh_interval: Completed requests between refreshes (0 disables)
        """
        self._login = login
        self.refresh_interval = refresh_interval
        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()
        self._requests_completed = 0
        self.logins = 0

    @property
    def current(self) -> Optional[Credential]:
        return self._credential

    async def get_token(self) -> Credential:
        """Return the live credential, logging in first if there is none."""
        if self._credential is None:
            async with self._lock:
                if self._credential is None:
                    await self._replace()
        return self._credential

    async def refresh(self, stale: Optional[Credential] = None) -> Credential:
        """
        Replace the live credential with a freshly issued one.

        Args:
            stale: Credential the caller considers expired. If the live
                credential is already a different one, it is returned as is.

        Returns:
            The live credential after the call

        Raises:
            AuthFailure: If the login exchange yields no token
        """
        async with self._lock:
            current = self._credential
            if stale is not None and current is not None and current is not stale:
                logger.debug(f"Token already refreshed (generation {current.generation})")
                return current
            return await self._replace()

    async def record_request(self) -> None:
        """Count a completed request and refresh on the configured cadence."""
        self._requests_completed += 1
        if self.refresh_interval > 0 and self._requests_completed % self.refresh_interval == 0:
            logger.info(f"Refreshing token after {self._requests_completed} requests")
            await self.refresh(stale=self._credential)

    async def _replace(self) -> Credential:
        token = await self._login()
        if not isinstance(token, str) or not token:
            raise AuthFailure("Login exchange did not return a token")

        generation = self._credential.generation + 1 if self._credential else 1
        self._credential = Credential(token=token, generation=generation)
        self.logins += 1
        logger.info(f"Obtained API token (generation {generation})")
        return self._credential


# ===================================================================
# TRANSPORT
# ===================================================================

async def api_call_with_backoff(
    func,
    *args,
    max_retries: int = API_MAX_RETRIES,
    backoff_base: float = API_BACKOFF_BASE,
    **kwargs
):
    """
    Execute an API call with exponential backoff on transport errors.

    Error responses are returned to the caller untouched; only connection
    failures and timeouts are retried.

    Args:
        func: Coroutine function to call
        *args: Positional arguments for func
        max_retries: Maximum number of attempts
        backoff_base: Base of the exponential delay in seconds
        **kwargs: Keyword arguments for func

    Returns:
        Result of func call

    Raises:
        aiohttp.ClientError or asyncio.TimeoutError if all attempts fail
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if attempt == attempts - 1:
                raise

            wait_time = backoff_base ** attempt
            logger.warning(f"API call failed (attempt {attempt + 1}/{attempts}): {e!r}")
            logger.info(f"Backing off for {wait_time:.1f}s")
            await asyncio.sleep(wait_time)


def parse_api_response(status: int, text: str, context: str = "") -> Any:
    """
    Decode a response body.

    Bodies carrying an ``error`` key are returned as is so the pagination
    loop can report them; undecodable bodies and HTTP failures without a
    body raise immediately.

    Raises:
        ApiError: If the body is not JSON, or the status is an error and the
            body has no error marker
    """
    try:
        body = json.loads(text) if text else None
    except json.JSONDecodeError:
        message = f"Non-JSON response from {context} (HTTP {status})"
    else:
        if status < 400 or (isinstance(body, dict) and "error" in body):
            return body
        message = f"HTTP {status} from {context}"

    logger.error(f"{message}:")
    logger.error(text or "<empty body>")
    raise ApiError(message, status, text)


def check_error_marker(body: Any, context: str = "") -> None:
    """Raise ApiError if a response carries a top-level error marker."""
    if isinstance(body, dict) and "error" in body:
        raw = json.dumps(body)
        logger.error(f"Error in API response for {context}:")
        logger.error(raw)
        raise ApiError(f"Error in API response for {context}", raw=raw)


class PrismaCloudClient:
    """
    Prisma Cloud Code Security API client.

    Every authenticated request reads the shared token from ``tokens``
    and reports completion back to it, which drives the refresh cadence.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_url: str,
        access_key: str,
        secret_key: str,
        refresh_interval: int = TOKEN_REFRESH_INTERVAL,
        max_retries: int = API_MAX_RETRIES,
        backoff_base: float = API_BACKOFF_BASE
    ):
        self.session = session
        self.api_url = api_url.rstrip("/")
        self._access_key = access_key
        self._secret_key = secret_key
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.tokens = TokenManager(self.login, refresh_interval)
        self.request_count = 0

    async def _send(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None
    ) -> Tuple[int, str]:
        """Issue one HTTP request and return (status, body text)."""
        headers = {
            "Accept": "application/json; charset=UTF-8",
            "Content-Type": "application/json; charset=UTF-8",
        }
        if token:
            headers["authorization"] = token

        async with self.session.request(
            method, f"{self.api_url}{path}", json=payload, headers=headers
        ) as response:
            text = await response.text()
            return response.status, text

    async def login(self) -> str:
        """
        Exchange the access key pair for an API token.

        Raises:
            AuthFailure: On transport failure or a response without a token
        """
        payload = {"username": self._access_key, "password": self._secret_key}
        try:
            status, text = await api_call_with_backoff(
                self._send, "POST", LOGIN_ENDPOINT, payload,
                max_retries=self.max_retries, backoff_base=self.backoff_base
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthFailure(f"Login request to {self.api_url} failed: {e!r}") from e

        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            body = None

        token = body.get("token") if isinstance(body, dict) else None
        if status >= 400 or not isinstance(token, str) or not token:
            raise AuthFailure(f"Login to {self.api_url} did not return a token (HTTP {status})")
        return token

    async def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Authenticated request returning the decoded body."""
        credential = await self.tokens.get_token()
        status, text = await api_call_with_backoff(
            self._send, method, path, payload, credential.token,
            max_retries=self.max_retries, backoff_base=self.backoff_base
        )
        self.request_count += 1
        await self.tokens.record_request()
        return parse_api_response(status, text, f"{method} {path}")

    async def list_repositories(self) -> List[Dict[str, Any]]:
        """Fetch the raw repository list."""
        body = await self.request("GET", REPOSITORIES_ENDPOINT)
        check_error_marker(body, "repository listing")
        if not isinstance(body, list):
            raise ApiError("Repository listing did not return an array", raw=json.dumps(body))
        return [repo for repo in body if isinstance(repo, dict)]

    async def fetch_findings_page(self, partition: Partition, offset: int, limit: int) -> Any:
        return await self.request(
            "POST", BRANCH_SCAN_ENDPOINT, build_findings_payload(partition, offset, limit)
        )

    async def fetch_policies_page(self, unit: WorkUnit, offset: int, limit: int) -> Any:
        path = POLICIES_ENDPOINT.format(resource_uuid=quote(unit.resource_uuid, safe=""))
        return await self.request("POST", path, build_detail_payload(unit, offset, limit))


def build_findings_payload(partition: Partition, offset: int, limit: int) -> Dict[str, Any]:
    return {
        "filters": {
            "repositories": list(partition.repo_ids),
            "branch": partition.branch,
            "checkStatus": CHECK_STATUS,
            "codeCategories": CODE_CATEGORIES,
        },
        "offset": offset,
        "search": {"scopes": [], "term": ""},
        "limit": limit,
        "sortBy": [],
    }


def build_detail_payload(unit: WorkUnit, offset: int, limit: int) -> Dict[str, Any]:
    return {
        "filters": {
            "repositories": [unit.repo_id],
            "branch": unit.scan_branch,
            "checkStatus": CHECK_STATUS,
            "codeCategories": CODE_CATEGORIES,
        },
        "codeCategory": unit.code_category,
        "limit": limit,
        "offset": offset,
        "sortBy": [],
        "search": {"scopes": [], "term": ""},
    }


# ===================================================================
# PARTITIONING
# ===================================================================

def sanitize_branch(branch: str) -> str:
    """Replace characters unsafe for file names with underscores."""
    return BRANCH_UNSAFE_CHARS.sub("_", branch)


def load_repositories(raw_repositories: Iterable[Dict[str, Any]]) -> List[Repository]:
    return [Repository.from_api(raw) for raw in raw_repositories]


def group_repositories_by_branch(repositories: Iterable[Repository]) -> Dict[str, List[str]]:
    """
    Group repository ids by default branch.

    Returns:
        Mapping of branch label to repository ids, branches sorted and
        repository ids in listing order
    """
    groups: Dict[str, List[str]] = defaultdict(list)
    for repo in repositories:
        if not repo.default_branch:
            logger.warning(f"Repository {repo.full_name} has no default branch. Skipping.")
            continue
        if not repo.id:
            logger.warning(f"Repository {repo.full_name} has no id. Skipping.")
            continue
        groups[repo.default_branch].append(repo.id)

    return {branch: groups[branch] for branch in sorted(groups)}


def partition_repositories(repo_ids: List[str], num_workers: int) -> List[List[str]]:
    """
    Split repository ids into contiguous, near-equal chunks.

    Uses min(len(repo_ids), num_workers) chunks of ceil(R / workers) ids;
    every id lands in exactly one chunk.

    Raises:
        ValueError: If num_workers is less than 1
    """
    if num_workers < 1:
        raise ValueError(f"num_workers must be at least 1, got {num_workers}")

    total = len(repo_ids)
    if total == 0:
        return []

    workers = min(total, num_workers)
    chunk_size = math.ceil(total / workers)
    return [repo_ids[start:start + chunk_size] for start in range(0, total, chunk_size)]


def build_partitions(branch_map: Dict[Optional[str], List[str]], num_workers: int) -> List[Partition]:
    """
    Partition every branch, numbering workers globally from 1.

    Branches that are null/empty, or that have no repositories, are skipped.
    """
    partitions = []
    worker_id = 1
    for branch, repo_ids in branch_map.items():
        if not branch or branch == "null":
            logger.warning("Branch is null or empty. Skipping.")
            continue
        if not repo_ids:
            logger.warning(f"No repositories found for branch {branch}. Skipping.")
            continue

        for chunk in partition_repositories(list(repo_ids), num_workers):
            partitions.append(Partition(worker_id=worker_id, branch=branch, repo_ids=tuple(chunk)))
            worker_id += 1

    return partitions


# ===================================================================
# PAGINATION
# ===================================================================

PageFetcher = Callable[[int, int], Awaitable[Any]]


async def drain(fetch_page: PageFetcher, page_size: int = PAGE_SIZE, label: str = "") -> AsyncIterator[Page]:
    """
    Drain an offset/limit paginated endpoint.

    Requests are issued one at a time. The sequence stops on an empty
    page, or after a page whose ``hasNext`` is not true.

    Args:
        fetch_page: Coroutine function taking (offset, limit), returning the decoded body
        page_size: Items requested per page
        label: Sequence name used in log lines

    Yields:
        Page objects with strictly increasing offsets

    Raises:
        ApiError: If a response carries an error marker
    """
    offset = 0
    while True:
        logger.debug(f"{label} fetching offset {offset}")
        body = await fetch_page(offset, page_size)

        context = f"{label} at offset {offset}"
        check_error_marker(body, context)
        if not isinstance(body, dict):
            raise ApiError(f"Unexpected response shape for {context}", raw=json.dumps(body))

        items = body.get("data") or []
        if not isinstance(items, list):
            raise ApiError(f"Response data is not an array for {context}", raw=json.dumps(body))

        if not items:
            logger.debug(f"{label} found no items at offset {offset}")
            return

        has_next = body.get("hasNext") is True
        yield Page(offset=offset, items=items, has_next=has_next, raw=body)

        if not has_next:
            logger.debug(f"{label} has no more pages after offset {offset}")
            return

        offset += page_size


# ===================================================================
# CONCURRENCY CONTROL
# ===================================================================

class ConcurrencyLimiter:
    """
    Bounds the number of fetch tasks in flight across all stages.

    Waiting tasks are admitted in the order they started waiting.
    """

    def __init__(self, max_concurrent: int = MAX_PARALLEL_JOBS):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.in_flight = 0
        self.peak = 0
        self.completed = 0

    async def run(self, func, *args, **kwargs):
        """Run a coroutine function once a slot is free."""
        async with self._semaphore:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            try:
                return await func(*args, **kwargs)
            finally:
                self.in_flight -= 1
                self.completed += 1

    def get_stats(self) -> Dict[str, int]:
        return {
            "max_concurrent": self.max_concurrent,
            "in_flight": self.in_flight,
            "peak": self.peak,
            "completed": self.completed,
        }


async def run_bounded(
    limiter: ConcurrencyLimiter,
    calls: List[Callable[[], Awaitable[Any]]],
    desc: str,
    unit: str,
    show_progress: bool = True
) -> List[Any]:
    """
    Run zero-argument coroutine functions under the limiter.

    A failing task is logged and contributes no result; the others keep
    running. AuthFailure cancels everything and is re-raised.

    Returns:
        Results of the successful tasks, in completion order
    """
    tasks = [asyncio.create_task(limiter.run(call)) for call in calls]
    results = []

    try:
        with tqdm(total=len(tasks), desc=desc, unit=unit, disable=not show_progress) as pbar:
            for coro in asyncio.as_completed(tasks):
                try:
                    results.append(await coro)
                except AuthFailure:
                    raise
                except Exception as e:
                    logger.error(f"{desc} task failed: {e!r}", exc_info=True)
                pbar.update(1)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    return results


# ===================================================================
# AGGREGATION & DEDUPLICATION
# ===================================================================

def project_finding(item: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a branch-scan error item to the fields needed downstream."""
    return {name: item.get(name) for name in FINDING_FIELDS}


def merge_pages(pages: Iterable[Page]) -> List[Dict[str, Any]]:
    """Flatten pages into one list of projected findings, preserving order."""
    return [project_finding(item) for page in pages for item in page.items if isinstance(item, dict)]


def deduplicate(records: Iterable[Dict[str, Any]]) -> List[WorkUnit]:
    """
    Collapse records to unique work units, keeping first-seen order.

    Two records map to the same unit only if their whole composite key
    (resource, repository, branch, category, counter) is equal.
    """
    return list(dict.fromkeys(WorkUnit.from_record(record) for record in records))


# ===================================================================
# FETCH STAGES
# ===================================================================

async def fetch_partition_findings(
    client: PrismaCloudClient,
    partition: Partition,
    page_size: int = PAGE_SIZE,
    artifact_dir: Optional[Path] = None
) -> Tuple[int, List[Page]]:
    """
    Drain branch-scan errors for one partition.

    Returns:
        (worker_id, pages). On ApiError the pages gathered before the
        error are returned.
    """
    label = f"Worker {partition.worker_id}"
    log_extra = {"worker": partition.worker_id, "branch": partition.branch}
    fetch_page = functools.partial(client.fetch_findings_page, partition)
    pages = []

    try:
        async for page in drain(fetch_page, page_size, label):
            pages.append(page)
            if artifact_dir:
                name = f"vcs_response_worker{partition.worker_id}_{page.offset:06d}_{partition.sanitized_branch}.json"
                await write_artifact(artifact_dir / "findings" / name, page.raw)
    except ApiError as e:
        logger.warning(f"{label} stopped early for branch {partition.branch}: {e}", extra=log_extra)

    item_count = sum(len(page.items) for page in pages)
    logger.info(
        f"{label} fetched {item_count} findings in {len(pages)} pages for branch {partition.branch}",
        extra=dict(log_extra, record_count=item_count)
    )
    return partition.worker_id, pages


async def fetch_unit_details(
    client: PrismaCloudClient,
    unit: WorkUnit,
    index: int,
    page_size: int = PAGE_SIZE,
    group_size: int = DETAIL_GROUP_SIZE,
    artifact_dir: Optional[Path] = None
) -> Optional[List[Dict[str, Any]]]:
    """
    Drain policy details for one work unit.

    Every returned item is tagged with the unit's resourceUuid and
    codeCategory when the API omits them or sends them empty.

    Returns:
        Detail items, or None if the unit was skipped for a missing field
    """
    try:
        unit.validate(index)
    except MissingField as e:
        logger.warning(f"{e}. Skipping.", extra={"unit_index": index})
        return None

    label = f"Item {index}"
    group_num = index // group_size + 1
    fetch_page = functools.partial(client.fetch_policies_page, unit)
    details = []

    try:
        page_num = 0
        async for page in drain(fetch_page, page_size, label):
            page_num += 1
            for item in page.items:
                if isinstance(item, dict):
                    if not item.get("resourceUuid"):
                        item["resourceUuid"] = unit.resource_uuid
                    if not item.get("codeCategory"):
                        item["codeCategory"] = unit.code_category
                    details.append(item)
            if artifact_dir:
                path = artifact_dir / f"group_{group_num}" / f"file_error_{index}_page_{page_num:04d}.json"
                await write_artifact(path, page.raw)
    except ApiError as e:
        logger.warning(f"{label} stopped early: {e}", extra={"unit_index": index})

    return details


async def fetch_all_details(
    client: PrismaCloudClient,
    units: List[WorkUnit],
    limiter: ConcurrencyLimiter,
    page_size: int = PAGE_SIZE,
    group_size: int = DETAIL_GROUP_SIZE,
    artifact_dir: Optional[Path] = None,
    show_progress: bool = True
) -> Tuple[Dict[int, List[Dict[str, Any]]], int]:
    """
    Fetch details for every work unit under the shared limiter.

    The token is refreshed every ``client.tokens.refresh_interval`` units
    processed; concurrent triggers collapse into one login.

    Returns:
        ({group number: detail items in unit order}, skipped unit count)
    """
    processed = 0
    interval = client.tokens.refresh_interval

    async def process(index: int, unit: WorkUnit):
        nonlocal processed
        processed += 1
        if interval > 0 and processed % interval == 0:
            logger.info(f"Refreshing token after {processed} work units")
            await client.tokens.refresh(stale=client.tokens.current)
        logger.debug(f"Processing item {index} out of {len(units)}", extra={"unit_index": index})
        details = await fetch_unit_details(client, unit, index, page_size, group_size, artifact_dir)
        return index, details

    calls = [functools.partial(process, index, unit) for index, unit in enumerate(units)]
    results = await run_bounded(limiter, calls, "Fetching details", "unit", show_progress)

    groups: Dict[int, List[Dict[str, Any]]] = {}
    skipped = 0
    for index, details in sorted(results, key=lambda result: result[0]):
        if details is None:
            skipped += 1
            continue
        groups.setdefault(index // group_size + 1, []).extend(details)

    return groups, skipped


# ===================================================================
# JOINS
# ===================================================================

def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 string or epoch timestamp into an aware datetime."""
    if value is None or value == "":
        return None

    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # Millisecond epochs are common in this API
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)

        text = str(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError):
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def index_repositories(repositories: Iterable[Repository]) -> Dict[str, List[Repository]]:
    """Map ``owner/name`` to every repository carrying it, in listing order."""
    index: Dict[str, List[Repository]] = defaultdict(list)
    for repo in repositories:
        index[repo.full_name].append(repo)
    return dict(index)


def select_repository(candidates: List[Repository], tie_break: str = REPO_TIE_BREAK) -> Repository:
    """
    Pick one repository among several sharing a name.

    ``first`` keeps listing order; ``last-scanned`` takes the most recent
    lastScanDate, falling back to listing order on ties and unparsable dates.
    """
    if tie_break == "first":
        return candidates[0]
    if tie_break == "last-scanned":
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        return max(candidates, key=lambda repo: _parse_datetime(repo.last_scan_date) or oldest)
    raise ValueError(f"Unknown tie-break policy {tie_break!r}, expected one of {TIE_BREAK_POLICIES}")


def join_repositories(
    findings: Iterable[Dict[str, Any]],
    repositories: Iterable[Repository],
    tie_break: str = REPO_TIE_BREAK
) -> List[Dict[str, Any]]:
    """
    Attach repository metadata to findings (inner join on ``owner/name``).

    Findings whose repository matches nothing are dropped.

    Raises:
        ValueError: If tie_break is not a known policy
    """
    if tie_break not in TIE_BREAK_POLICIES:
        raise ValueError(f"Unknown tie-break policy {tie_break!r}, expected one of {TIE_BREAK_POLICIES}")

    index = index_repositories(repositories)
    joined = []
    unmatched = 0
    ambiguous = set()

    for finding in findings:
        name = finding.get("repository") or ""
        candidates = index.get(name)
        if not candidates:
            unmatched += 1
            logger.debug(f"No repository metadata for {name!r}")
            continue

        if len(candidates) > 1 and name not in ambiguous:
            ambiguous.add(name)
            logger.warning(
                f"{len(candidates)} repositories share the name {name}; using tie-break '{tie_break}'"
            )

        record = dict(finding)
        record.update(select_repository(candidates, tie_break).metadata())
        joined.append(record)

    if unmatched:
        logger.warning(f"Dropped {unmatched} findings with no matching repository")

    return joined


def shell_quote_words(value: Any) -> str:
    """Render a value, or each element of a list, as single-quoted shell words."""
    if value is None:
        return ""

    values = value if isinstance(value, list) else [value]
    words = []
    for item in values:
        if isinstance(item, (int, float)) and not isinstance(item, bool):
            words.append(str(item))
        else:
            words.append("'" + str(item).replace("'", "'\\''") + "'")
    return " ".join(words)


def build_report_record(record: Dict[str, Any], detail: Dict[str, Any]) -> Dict[str, Any]:
    """Merge one policy detail into a repository-joined finding."""
    labels = detail.get("labels") or []
    if not isinstance(labels, list):
        labels = []
    first_label = labels[0] if labels and isinstance(labels[0], dict) else {}
    label_metadata = first_label.get("metadata")
    if not isinstance(label_metadata, dict):
        label_metadata = {}

    report_record = dict(record)
    report_record.update({
        "issue": detail.get("policy"),
        "severity": detail.get("severity"),
        "iacResourceName": detail.get("resourceName"),
        "resourceId": detail.get("resourceId"),
        "violationId": detail.get("violationId"),
        "riskFactors": shell_quote_words(detail.get("riskFactors")),
        "cvss": detail.get("cvss"),
        "causePackageName": detail.get("causePackageName"),
        "causePackageId": detail.get("causePackageId"),
        "firstDetected": detail.get("firstDetected"),
        "containerImageName": label_metadata.get("imageName") or "",
        "metaDataInfo": "; ".join(
            str(label["label"]) for label in labels if isinstance(label, dict) and label.get("label")
        ),
        "secretsValidationStatus": detail.get("secretValidationStatus"),
        "secretValidationCode": detail.get("resourceCode"),
        "secretCommitHash": detail.get("commitHash"),
        "secretCreatedBy": detail.get("createdBy"),
        "secretCreateDate": detail.get("createdOn"),
        "license": detail.get("license"),
    })
    return report_record


def index_details(details: Iterable[Dict[str, Any]]) -> Dict[Tuple[Any, Any], List[Dict[str, Any]]]:
    """Index details by (resourceUuid, codeCategory), dropping exact duplicates."""
    index: Dict[Tuple[Any, Any], List[Dict[str, Any]]] = defaultdict(list)
    seen = set()
    for detail in details:
        key = (detail.get("resourceUuid"), detail.get("codeCategory"))
        fingerprint = (key, json.dumps(detail, sort_keys=True, default=str))
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        index[key].append(detail)
    return dict(index)


def join_details(records: Iterable[Dict[str, Any]], details: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Inner join findings with policy details on (resourceUuid, codeCategory).

    Each finding yields one report record per matching detail; findings
    without a detail are dropped.
    """
    index = index_details(details)
    report_records = []
    dropped = 0

    for record in records:
        matches = index.get((record.get("resourceUuid"), record.get("codeCategory")))
        if not matches:
            dropped += 1
            continue
        report_records.extend(build_report_record(record, detail) for detail in matches)

    if dropped:
        logger.info(f"{dropped} findings had no policy details and were left out of the report")

    return report_records


# ===================================================================
# ARTIFACTS
# ===================================================================

async def write_artifact(path: Path, payload: Any) -> None:
    """Persist one JSON artifact."""
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, 'w', encoding='utf-8') as f:
        await f.write(json.dumps(payload))


def reset_artifact_dir(artifact_dir: Path) -> int:
    """
    Remove the repository list and page artifacts left by an earlier run.

    A rebuild globs every page under the directory, so pages from a
    previous run would bring back findings that have since been fixed.
    Other files in the directory are left alone.

    Returns:
        Number of entries removed
    """
    artifact_dir = Path(artifact_dir)
    stale = [artifact_dir / "repositories.json", artifact_dir / "findings"]
    stale.extend(sorted(artifact_dir.glob("group_*")))

    removed = 0
    for path in stale:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            continue
        removed += 1

    if removed:
        logger.info(f"Cleared {removed} artifact entries from a previous run in {artifact_dir}")
    return removed


async def load_artifact(path: Path) -> Any:
    """
    Read one JSON artifact.

    Raises:
        MalformedArtifact: If the file cannot be read or parsed
    """
    try:
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            content = await f.read()
        return json.loads(content)
    except (OSError, ValueError) as e:
        raise MalformedArtifact(path, str(e)) from e


async def merge_artifacts(paths: Iterable[Path]) -> List[Dict[str, Any]]:
    """
    Concatenate the ``data`` arrays of page artifacts.

    Unreadable files, and files without a ``data`` array, are skipped.
    """
    items = []
    for path in sorted(paths):
        try:
            body = await load_artifact(path)
            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, list):
                raise MalformedArtifact(path, "no data array")
        except MalformedArtifact as e:
            logger.warning(f"Skipping invalid JSON file: {e}")
            continue
        items.extend(item for item in data if isinstance(item, dict))
    return items


async def rebuild_from_artifacts(
    artifact_dir: Path,
    tie_break: str = REPO_TIE_BREAK
) -> List[Dict[str, Any]]:
    """
    Rebuild report records from a persisted artifact directory.

    Raises:
        MalformedArtifact: If repositories.json is missing or unusable
    """
    repositories_path = artifact_dir / "repositories.json"
    raw_repositories = await load_artifact(repositories_path)
    if not isinstance(raw_repositories, list):
        raise MalformedArtifact(repositories_path, "expected a JSON array")

    repositories = load_repositories(repo for repo in raw_repositories if isinstance(repo, dict))
    findings = [project_finding(item) for item in await merge_artifacts((artifact_dir / "findings").glob("*.json"))]
    logger.info(f"Loaded {len(repositories)} repositories and {len(findings)} findings from {artifact_dir}")

    joined = join_repositories(findings, repositories, tie_break)
    details = await merge_artifacts(artifact_dir.glob("group_*/*.json"))
    logger.info(f"Loaded {len(details)} policy details from {artifact_dir}")

    return join_details(joined, details)


# ===================================================================
# REPORT GENERATION
# ===================================================================

def format_cell(value: Any) -> str:
    """Render one value as a CSV cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "; ".join(format_cell(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def default_report_path(report_dir: Path = REPORT_DIR, today: Optional[date] = None) -> Path:
    today = today or date.today()
    return Path(report_dir) / f"code_security_report_{today:%m_%d_%y}.csv"


def export_csv(records: Iterable[Dict[str, Any]], output_path: Path) -> int:
    """
    Write report records as CSV with the fixed REPORT_COLUMNS header.

    Returns:
        Number of data rows written
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    row_count = 0

    with open(output_path, 'w', newline='', encoding='utf-8') as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=REPORT_COLUMNS, restval='', extrasaction='ignore')
        writer.writeheader()

        for record in records:
            writer.writerow({column: format_cell(record.get(column)) for column in REPORT_COLUMNS})
            row_count += 1

    logger.info(f"CSV report written to {output_path}", extra={"record_count": row_count})
    return row_count


# ===================================================================
# MAIN ORCHESTRATION
# ===================================================================

@dataclass
class ReportConfig:
    """Run settings, defaulting to the environment-driven constants."""
    api_url: str = PC_APIURL
    access_key: str = PC_ACCESSKEY
    secret_key: str = PC_SECRETKEY
    num_workers: int = NUM_WORKERS
    max_parallel: int = MAX_PARALLEL_JOBS
    page_size: int = PAGE_SIZE
    refresh_interval: int = TOKEN_REFRESH_INTERVAL
    group_size: int = DETAIL_GROUP_SIZE
    tie_break: str = REPO_TIE_BREAK
    artifact_dir: Optional[Path] = Path(ARTIFACT_DIR) if ARTIFACT_DIR else None
    max_retries: int = API_MAX_RETRIES
    backoff_base: float = API_BACKOFF_BASE
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    show_progress: bool = True

    def missing_settings(self) -> List[str]:
        names = {"PC_APIURL": self.api_url, "PC_ACCESSKEY": self.access_key, "PC_SECRETKEY": self.secret_key}
        return [name for name, value in names.items() if not value]


async def run_pipeline(
    config: ReportConfig,
    session: Optional[aiohttp.ClientSession] = None
) -> Tuple[List[Dict[str, Any]], PipelineStats]:
    """
    Run the full fetch-aggregate-join pipeline.

    Args:
        config: Run settings
        session: Existing aiohttp session; one is created when omitted

    Returns:
        (report records, run statistics)

    Raises:
        AuthFailure: If any login exchange fails
    """
    if session is None:
        timeout = aiohttp.ClientTimeout(total=config.request_timeout or None)
        async with aiohttp.ClientSession(timeout=timeout) as own_session:
            return await run_pipeline(config, own_session)

    if config.group_size < 1 or config.page_size < 1:
        raise ValueError("page_size and group_size must be at least 1")

    if config.artifact_dir:
        reset_artifact_dir(config.artifact_dir)

    stats = PipelineStats()
    client = PrismaCloudClient(
        session, config.api_url, config.access_key, config.secret_key,
        refresh_interval=config.refresh_interval,
        max_retries=config.max_retries,
        backoff_base=config.backoff_base
    )
    limiter = ConcurrencyLimiter(config.max_parallel)

    await client.tokens.refresh()

    raw_repositories = await client.list_repositories()
    if config.artifact_dir:
        await write_artifact(config.artifact_dir / "repositories.json", raw_repositories)
    repositories = load_repositories(raw_repositories)
    stats.repositories = len(repositories)
    logger.info(f"✓ Found {len(repositories)} repositories")

    branch_map = group_repositories_by_branch(repositories)
    partitions = build_partitions(branch_map, config.num_workers)
    stats.partitions = len(partitions)
    logger.info(f"Fetching errors for {len(branch_map)} branches across {len(partitions)} workers")

    partition_results = await run_bounded(
        limiter,
        [functools.partial(fetch_partition_findings, client, partition, config.page_size, config.artifact_dir)
         for partition in partitions],
        "Fetching errors", "worker", config.show_progress
    )
    pages = [page for _, worker_pages in sorted(partition_results, key=lambda result: result[0])
             for page in worker_pages]
    stats.finding_pages = len(pages)
    logger.info("All error pages have been gathered")

    findings = merge_pages(pages)
    stats.findings = len(findings)
    joined = join_repositories(findings, repositories, config.tie_break)
    stats.joined_findings = len(joined)

    units = deduplicate(joined)
    stats.work_units = len(units)
    logger.info(f"{len(findings)} findings collapsed to {len(units)} work units")

    await client.tokens.refresh(stale=client.tokens.current)

    groups, stats.skipped_units = await fetch_all_details(
        client, units, limiter, config.page_size, config.group_size,
        config.artifact_dir, config.show_progress
    )
    details = [detail for group in sorted(groups) for detail in groups[group]]
    stats.details = len(details)
    logger.info(f"All items have been processed: {len(details)} policy details in {len(groups)} groups")

    records = join_details(joined, details)
    stats.records = len(records)
    stats.token_logins = client.tokens.logins
    stats.api_requests = client.request_count
    stats.peak_in_flight = limiter.peak

    return records, stats


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command-line arguments and display help information."""
    parser = argparse.ArgumentParser(
        description='Export Prisma Cloud Code Security branch-scan errors to a CSV report',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES (Required):
  PC_APIURL             Prisma Cloud API base URL
  PC_ACCESSKEY          Access key id
  PC_SECRETKEY          Secret key

ENVIRONMENT VARIABLES (Optional):
  NUM_WORKERS           Partitions per branch (default: 5)
  MAX_PARALLEL_JOBS     Concurrent fetch tasks (default: 10)
  TOKEN_REFRESH_INTERVAL  Requests between token refreshes (default: 100)
  REPORT_DIR            Report directory (default: reports)
  ARTIFACT_DIR          Keep intermediate pages in this directory
  REPO_TIE_BREAK        first|last-scanned (default: first)

USAGE EXAMPLES:
  Full export:
    python code_security_report.py

  Keep artifacts, then rebuild offline:
    python code_security_report.py --artifact-dir ./temp
    python code_security_report.py --from-artifacts ./temp --output report.csv

EXIT CODES:
  0   Success
  1   Error (missing config, authentication failure, etc.)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument(
        '--output',
        type=str,
        metavar='PATH',
        help=f'CSV report path (default: {REPORT_DIR}/code_security_report_MM_DD_YY.csv)'
    )

    parser.add_argument(
        '--workers',
        type=int,
        default=NUM_WORKERS,
        help=f'Partitions per branch (default: {NUM_WORKERS})'
    )

    parser.add_argument(
        '--max-parallel',
        type=int,
        default=MAX_PARALLEL_JOBS,
        help=f'Maximum concurrent fetch tasks (default: {MAX_PARALLEL_JOBS})'
    )

    parser.add_argument(
        '--artifact-dir',
        type=str,
        metavar='DIR',
        default=ARTIFACT_DIR or None,
        help='Persist repository, error and detail pages to this directory'
    )

    parser.add_argument(
        '--from-artifacts',
        type=str,
        metavar='DIR',
        help='Rebuild the report from a previous --artifact-dir without calling the API'
    )

    parser.add_argument(
        '--tie-break',
        type=str,
        choices=list(TIE_BREAK_POLICIES),
        default=REPO_TIE_BREAK,
        help=f'Repository chosen when several share a name (default: {REPO_TIE_BREAK})'
    )

    parser.add_argument(
        '--log-format',
        type=str,
        choices=['text', 'json'],
        default=LOG_FORMAT,
        help=f'Logging format (default: {LOG_FORMAT})'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable progress bars'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug logging'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {VERSION}'
    )

    return parser.parse_args(argv)


# ===================================================================
# MAIN ENTRY POINT
# ===================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)

    setup_logging(args.log_format)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    config = ReportConfig(
        num_workers=args.workers,
        max_parallel=args.max_parallel,
        tie_break=args.tie_break,
        artifact_dir=Path(args.artifact_dir) if args.artifact_dir else None,
        show_progress=not args.no_progress,
    )
    output_path = Path(args.output) if args.output else default_report_path()

    try:
        if args.from_artifacts:
            logger.info("=" * 70)
            logger.info("CODE SECURITY REPORT REBUILD")
            logger.info("=" * 70)
            logger.info(f"Artifact directory: {args.from_artifacts}")

            records = asyncio.run(rebuild_from_artifacts(Path(args.from_artifacts), config.tie_break))

        else:
            missing = config.missing_settings()
            if missing:
                logger.error("=" * 70)
                logger.error(f"ERROR: {', '.join(missing)} environment variable(s) not set")
                logger.error("=" * 70)
                logger.error("")
                logger.error("Please set your Prisma Cloud API settings:")
                logger.error("  export PC_APIURL=\"https://api.prismacloud.io\"")
                logger.error("  export PC_ACCESSKEY=\"your-access-key\"")
                logger.error("  export PC_SECRETKEY=\"your-secret-key\"")
                logger.error("")
                logger.error("For help: python code_security_report.py --help")
                logger.error("=" * 70)
                return 1

            logger.info("=" * 70)
            logger.info("CODE SECURITY REPORT")
            logger.info("=" * 70)
            logger.info(f"API: {config.api_url}")
            logger.info(f"Workers per branch: {config.num_workers}")
            logger.info(f"Max parallel jobs: {config.max_parallel}")
            logger.info(f"Tie-break policy: {config.tie_break}")
            logger.info(f"Artifact directory: {config.artifact_dir or 'disabled'}")
            logger.info("=" * 70)

            records, stats = asyncio.run(run_pipeline(config))
            logger.info(f"Run stats: {stats.get_stats()}")

        export_csv(records, output_path)

        logger.info("=" * 70)
        logger.info(f"All done, your report is saved as: {output_path}")
        logger.info("=" * 70)

        return 0

    except AuthFailure as e:
        logger.error(f"Authentication failed: {e}")
        return 1
    except MalformedArtifact as e:
        logger.error(f"Cannot rebuild report: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Export interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
