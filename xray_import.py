#!/usr/bin/env python3
"""
Xray Cloud Import & Link
========================
Publishes a locally authored test case to Xray Cloud, then attaches the created
Test issue to the Xray collections it belongs to.

What happens per run:
  Bulk import            → one Test issue, created by an asynchronous Xray job
  Job polling            → created issue id + key (or a failure / timeout)
  Linking (concurrent)   → Test Plans, Test Executions, Test Sets, folder,
                           preconditions; each link succeeds or fails on its own
  Reconciliation         → one fresh read of the issue's links, diffed against
                           what was requested (a link mutation can "succeed"
                           while Xray silently drops the reference)

Local test records are JSON files under RECORDS_DIR (one object per file, with
an "xrayLinking" block describing the wanted links).

Usage:
    python xray_import.py
"""

import sys
import json
import re
import os
import time
import getpass
import tempfile
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Optional

import requests

# ═════════════════════════════════════════════════════════════════════════════
#  CONFIGURATION
# ═════════════════════════════════════════════════════════════════════════════

XRAY_BASE_URL = "https://xray.cloud.getxray.app/api"

CONFIG_FILE = os.path.join("config", "xray-config.json")
RECORDS_DIR = "testCases"

# Xray tokens live 24h; refresh 30 minutes before that.
TOKEN_VALIDITY_HOURS = 24
TOKEN_REFRESH_MARGIN_MINUTES = 30
TOKEN_MAX_AGE_SECONDS = (TOKEN_VALIDITY_HOURS * 60 - TOKEN_REFRESH_MARGIN_MINUTES) * 60

AUTH_TIMEOUT = 30
GRAPHQL_TIMEOUT = 30
STATUS_TIMEOUT = 30
IMPORT_TIMEOUT = 60

POLL_MAX_ATTEMPTS = 30
POLL_INTERVAL_MS = 2000

# Query page size used for every list / link read
QUERY_LIMIT = 100
# ═════════════════════════════════════════════════════════════════════════════

JOB_PENDING   = "pending"
JOB_SUCCESSFUL = "successful"
JOB_FAILED    = "failed"
JOB_TIMED_OUT = "timed-out"

STEP_PENDING     = "pending"
STEP_IN_PROGRESS = "in-progress"
STEP_COMPLETED   = "completed"
STEP_FAILED      = "failed"

_STEP_RANK: dict = {
    STEP_PENDING:     0,
    STEP_IN_PROGRESS: 1,
    STEP_COMPLETED:   2,
    STEP_FAILED:      2,
}

STEP_CREATE = "create"

KIND_PLAN         = "plan"
KIND_EXECUTION    = "execution"
KIND_SET          = "set"
KIND_FOLDER       = "folder"
KIND_PRECONDITION = "precondition"

KIND_LABELS: dict = {
    KIND_PLAN:         "Test Plan",
    KIND_EXECUTION:    "Test Execution",
    KIND_SET:          "Test Set",
    KIND_FOLDER:       "Folder",
    KIND_PRECONDITION: "Preconditions",
}

log = logging.getLogger("xray_import")


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class XrayError(Exception):
    """Base class for everything this module raises on purpose."""


class AuthenticationError(XrayError):
    """Xray rejected the client id / secret exchange."""


class TransportError(XrayError):
    """Connection failure, timeout or unexpected HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None, body=None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def remote_message(self) -> str:
        if isinstance(self.body, dict):
            for key in ("error", "message"):
                if self.body.get(key):
                    return str(self.body[key])
        return str(self)


class RemoteQueryError(XrayError):
    """A GraphQL response carried a top-level "errors" array."""


class SubmissionError(XrayError):
    """Bulk import was rejected or returned no job id. Nothing was created."""


class JobFailedError(XrayError):
    def __init__(self, message: str, details=None) -> None:
        super().__init__(message)
        self.details = details


class JobTimeoutError(XrayError):
    """Polling budget exhausted. The job may still complete remotely."""


class LinkError(XrayError):
    """One link operation failed. Never escapes the linking fan-out."""


class ValidationReadError(XrayError):
    """The reconciliation read failed. Degrades the result, never fatal."""


class ImportCancelledError(XrayError):
    pass


class RecordNotFoundError(XrayError):
    pass


# Errors that stop an import run before an issue reference exists
FATAL_ERRORS = (
    AuthenticationError,
    TransportError,
    RemoteQueryError,
    SubmissionError,
    JobFailedError,
    JobTimeoutError,
    ImportCancelledError,
    RecordNotFoundError,
)


# ─────────────────────────────────────────────────────────────────────────────
# Utilities
# ─────────────────────────────────────────────────────────────────────────────

def prompt(message: str, default: str = None) -> str:
    suffix = f" [{default}]" if default is not None else ""
    value = input(f"{message}{suffix}: ").strip()
    return value if value else (default or "")


def prompt_secret(message: str) -> str:
    return getpass.getpass(f"{message}: ").strip()


def _results(obj, key: str = "results") -> list:
    """Xray paginated fields wrap their rows in {"results": [...]}."""
    if not obj:
        return []
    return obj.get(key) or []


def _first_error_message(errors) -> str:
    first = errors[0] if errors else None
    if isinstance(first, dict) and first.get("message"):
        return str(first["message"])
    if isinstance(first, str) and first:
        return first
    return "GraphQL error"


def _count(value) -> Optional[int]:
    """Normalise an Xray "added" field, which is either a number or a list of ids."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return len(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CancelToken:
    """
    Cooperative cancellation flag shared by one import run.
    Calls already sent to Xray are never interrupted. Cancelling only stops
    further steps from starting.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True as soon as the run is cancelled."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self, message: str = "Import cancelled") -> None:
        if self._event.is_set():
            raise ImportCancelledError(message)


# ─────────────────────────────────────────────────────────────────────────────
# Config file helpers
# ─────────────────────────────────────────────────────────────────────────────

def load_config(path: str = CONFIG_FILE) -> dict:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def write_json_atomic(path: str, data) -> None:
    """Write through a temp file unique to this call, then swap it into place."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=os.path.basename(path) + ".",
                               suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def save_config(config: dict, path: str = CONFIG_FILE) -> None:
    write_json_atomic(path, config)


# ─────────────────────────────────────────────────────────────────────────────
# Credentials & token cache
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Credentials:
    client_id: str
    client_secret: str

    @classmethod
    def from_config(cls, config: dict) -> "Credentials":
        return cls(config.get("xrayClientId") or "", config.get("xrayClientSecret") or "")


@dataclass(frozen=True)
class TokenState:
    token: str
    issued_at: float     # epoch seconds

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and (now - self.issued_at) < TOKEN_MAX_AGE_SECONDS

    def to_config(self) -> dict:
        expires = datetime.fromtimestamp(
            self.issued_at + TOKEN_VALIDITY_HOURS * 3600, tz=timezone.utc)
        return {
            "token":     self.token,
            "timestamp": int(self.issued_at * 1000),
            "expiresAt": expires.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
        }

    @classmethod
    def from_config(cls, data) -> Optional["TokenState"]:
        if not isinstance(data, dict):
            return None
        token, stamp = data.get("token"), data.get("timestamp")
        if not token or not stamp:
            return None
        return cls(token, float(stamp) / 1000.0)


class InMemoryTokenStore:
    def __init__(self, state: Optional[TokenState] = None) -> None:
        self.state = state

    def load(self) -> Optional[TokenState]:
        return self.state

    def save(self, state: TokenState) -> None:
        self.state = state


class ConfigFileTokenStore:
    """Keeps the token in the "tokenData" field of the on-disk config record."""

    def __init__(self, path: str = CONFIG_FILE) -> None:
        self.path = path
        # link threads may refresh at the same time; one read-modify-write at a time
        self._lock = threading.Lock()

    def load(self) -> Optional[TokenState]:
        return TokenState.from_config(load_config(self.path).get("tokenData"))

    def save(self, state: TokenState) -> None:
        with self._lock:
            config = load_config(self.path)
            config["tokenData"] = state.to_config()
            save_config(config, self.path)


def _auth_error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        msg = str(body["error"])
    else:
        msg = resp.text[:300] or f"HTTP {resp.status_code}"
    if "Invalid client credentials" in msg:
        return "Invalid Client ID or Client Secret"
    return f"Authentication failed: {msg}"


def xray_authenticate(credentials: Credentials, auth_url: str) -> str:
    """Exchange client id / secret for a bearer token. No retry."""
    payload = {"client_id": credentials.client_id,
               "client_secret": credentials.client_secret}
    try:
        resp = requests.post(auth_url, json=payload,
                             headers={"Content-Type": "application/json"},
                             timeout=AUTH_TIMEOUT)
    except requests.exceptions.ConnectionError:
        raise TransportError(f"Connection error: {auth_url}")
    except requests.exceptions.Timeout:
        raise TransportError(f"Timeout: {auth_url}")
    if 400 <= resp.status_code < 500:
        raise AuthenticationError(_auth_error_message(resp))
    if not resp.ok:
        raise TransportError(f"Xray authenticate {resp.status_code}: {resp.text[:300]}",
                             status_code=resp.status_code)
    try:
        token = resp.json()
    except ValueError:
        token = resp.text.strip().strip('"')
    if not token or not isinstance(token, str):
        raise AuthenticationError("Authentication failed: No token received")
    return token


def validate_credentials(credentials: Credentials,
                         base_url: str = XRAY_BASE_URL) -> tuple:
    """One-off exchange that does not touch any cache. Returns (ok, error)."""
    try:
        xray_authenticate(credentials, f"{base_url.rstrip('/')}/v2/authenticate")
    except XrayError as exc:
        return False, str(exc)
    return True, None


class TokenManager:
    """
    Lazily refreshed bearer token.

    The cached TokenState is the only state shared between concurrent calls.
    Two callers racing through an expired token may both authenticate; the
    second write simply replaces an equally valid token.
    """

    def __init__(self, store=None, clock: Callable[[], float] = time.time,
                 base_url: str = XRAY_BASE_URL) -> None:
        self.store    = store if store is not None else InMemoryTokenStore()
        self.clock    = clock
        self.auth_url = f"{base_url.rstrip('/')}/v2/authenticate"

    def get_token(self, credentials: Credentials) -> str:
        state = self.store.load()
        if state is not None and state.is_valid(self.clock()):
            return state.token
        log.debug("Xray token missing or expired, authenticating")
        token = xray_authenticate(credentials, self.auth_url)
        self.store.save(TokenState(token, self.clock()))
        return token


# ─────────────────────────────────────────────────────────────────────────────
# Step formatting  (code detection → Xray wiki {code} blocks)
# ─────────────────────────────────────────────────────────────────────────────

_TS_PATTERNS = [re.compile(p) for p in (
    r":\s*(string|number|boolean|any|void|never|unknown)\b",
    r"interface\s+\w+",
    r"type\s+\w+\s*=",
)]

_JS_PATTERNS = [re.compile(p) for p in (
    r"\b(const|let|var)\s+\w+\s*=",
    r"\bfunction\s+\w*\s*\(",
    r"=>\s*[{(]",
    r"\bexport\s+(default\s+)?",
    r"\bimport\s+.*\s+from\s+",
    r"\bclass\s+\w+",
    r"\basync\s+(function|\()",
)]


def _is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
        return True
    except ValueError:
        return False


def detect_code_language(text: str) -> str:
    """Return "json", "typescript", "javascript" or "none"."""
    if not text or not text.strip():
        return "none"
    trimmed = text.strip()
    if trimmed[0] in "{[" and _is_valid_json(trimmed):
        return "json"
    # TypeScript first: it is a superset of the JavaScript markers
    if any(p.search(trimmed) for p in _TS_PATTERNS):
        return "typescript"
    if any(p.search(trimmed) for p in _JS_PATTERNS):
        return "javascript"
    return "none"


def format_step_text(text: str) -> str:
    if not text:
        return ""
    language = detect_code_language(text)
    if language == "none":
        return text
    return f"{{code:{language}}}\n{text}\n{{code}}"


def to_bulk_import_format(records: list, project_key: str) -> list:
    """Local records → Xray bulk import payload (one entry per record)."""
    payload = []
    for rec in records:
        steps = [
            {
                "action": format_step_text(step.get("action") or ""),
                "data":   format_step_text(step.get("data") or ""),
                "result": format_step_text(step.get("result") or ""),
            }
            for step in (rec.get("steps") or [])
        ]
        payload.append({
            "testtype": rec.get("testType") or "Manual",
            "fields": {
                "summary":     rec.get("summary") or "",
                "project":     {"key": project_key},
                "description": rec.get("description") or "",
                "labels":      list(rec.get("labels") or []),
            },
            "steps": steps,
        })
    return payload


# ─────────────────────────────────────────────────────────────────────────────
# Job status
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RemoteIssueRef:
    issue_id: str
    key: str


def extract_created_issues(result) -> list:
    """
    Created issues from a successful job envelope.
    Xray reports them under "issues" or, on some tenants, "createdIssues".
    """
    if not isinstance(result, dict):
        return []
    issues = result.get("issues") or result.get("createdIssues") or []
    return [RemoteIssueRef(str(i.get("id") or ""), i.get("key") or "")
            for i in issues if isinstance(i, dict)]


def extract_job_error(result) -> str:
    """Most specific message available in a failed job envelope."""
    if isinstance(result, dict):
        if result.get("error"):
            return str(result["error"])
        if result.get("message"):
            return str(result["message"])
        errors = result.get("errors")
        if errors:
            return ", ".join(e if isinstance(e, str) else json.dumps(e) for e in errors)
    if isinstance(result, str) and result:
        return result
    if result is not None:
        return json.dumps(result)
    return "Import job failed"


@dataclass
class JobStatusResult:
    success: bool
    status: str
    job_id: str = ""
    issues: list = field(default_factory=list)
    error: Optional[str] = None
    details: object = None
    attempts: int = 0

    @property
    def issue_ids(self) -> list:
        return [i.issue_id for i in self.issues]

    @property
    def issue_keys(self) -> list:
        return [i.key for i in self.issues]

    def raise_for_status(self) -> None:
        if self.status == JOB_FAILED:
            raise JobFailedError(self.error or "Import job failed", details=self.details)
        if self.status == JOB_TIMED_OUT:
            raise JobTimeoutError(
                f"{self.error or 'Job status polling timed out'} "
                f"(job {self.job_id} may still create the test in Xray)")


# ─────────────────────────────────────────────────────────────────────────────
# Xray REST + GraphQL client
# ─────────────────────────────────────────────────────────────────────────────

_TEST_PLANS_QUERY = """
query GetTestPlans($jql: String!, $limit: Int!) {
    getTestPlans(jql: $jql, limit: $limit) {
        total
        results { issueId jira(fields: ["key", "summary"]) tests(limit: 1) { total } }
    }
}
"""

_TEST_EXECUTIONS_QUERY = """
query GetTestExecutions($jql: String!, $limit: Int!) {
    getTestExecutions(jql: $jql, limit: $limit) {
        total
        results { issueId jira(fields: ["key", "summary"]) tests(limit: 1) { total } }
    }
}
"""

_TEST_SETS_QUERY = """
query GetTestSets($jql: String!, $limit: Int!) {
    getTestSets(jql: $jql, limit: $limit) {
        total
        results { issueId jira(fields: ["key", "summary"]) tests(limit: 1) { total } }
    }
}
"""

_PRECONDITIONS_QUERY = """
query GetPreconditions($jql: String!, $limit: Int!) {
    getPreconditions(jql: $jql, limit: $limit) {
        total
        results { issueId jira(fields: ["key", "summary"]) }
    }
}
"""

_FOLDER_QUERY = """
query GetFolder($projectId: String!, $path: String!) {
    getFolder(projectId: $projectId, path: $path) { name path testsCount folders }
}
"""

_PROJECT_SETTINGS_QUERY = """
query GetProjectSettings($projectIdOrKey: String!) {
    getProjectSettings(projectIdOrKey: $projectIdOrKey) { projectId }
}
"""

_LINKED = 'results { issueId jira(fields: ["key"]) }'

_TEST_LINKS_QUERY = """
query GetTestWithLinks($issueId: String!) {
    getTest(issueId: $issueId) {
        issueId
        jira(fields: ["key"])
        folder { path }
        testPlans(limit: %(limit)d) { %(linked)s }
        testSets(limit: %(limit)d) { %(linked)s }
        testExecutions(limit: %(limit)d) { %(linked)s }
        preconditions(limit: %(limit)d) { %(linked)s }
    }
}
""" % {"limit": QUERY_LIMIT, "linked": _LINKED}


def _collection_mutation(name: str, count_field: str,
                         ids_arg: str = "testIssueIds") -> str:
    return (
        f"mutation {name[0].upper()}{name[1:]}($issueId: String!, ${ids_arg}: [String]!) {{"
        f"  {name}(issueId: $issueId, {ids_arg}: ${ids_arg}) {{ {count_field} warning }}"
        f"}}"
    )


def _folder_mutation(name: str) -> str:
    return (
        f"mutation {name[0].upper()}{name[1:]}($projectId: String!, $path: String!, "
        f"$testIssueIds: [String]!) {{"
        f"  {name}(projectId: $projectId, path: $path, testIssueIds: $testIssueIds) {{"
        f"    folder {{ name path testsCount }} warnings"
        f"  }}"
        f"}}"
    )


class XrayClient:
    def __init__(self, credentials: Credentials, token_manager: TokenManager = None,
                 base_url: str = XRAY_BASE_URL) -> None:
        self.credentials   = credentials
        self.token_manager = token_manager or TokenManager(base_url=base_url)
        self.base          = base_url.rstrip("/")

    @classmethod
    def from_config(cls, config: dict, token_store=None) -> "XrayClient":
        base_url = config.get("xrayBaseUrl") or XRAY_BASE_URL
        manager  = TokenManager(token_store, base_url=base_url)
        return cls(Credentials.from_config(config), manager, base_url)

    def _request(self, method: str, path: str, *,
                 json_body=None, timeout: int = GRAPHQL_TIMEOUT,
                 expected=(200, 201)):
        url   = f"{self.base}/{path.lstrip('/')}"
        token = self.token_manager.get_token(self.credentials)
        headers = {"Authorization": f"Bearer {token}",
                   "Content-Type": "application/json"}
        try:
            resp = requests.request(method, url, headers=headers,
                                    json=json_body, timeout=timeout)
        except requests.exceptions.ConnectionError:
            raise TransportError(f"Connection error: {url}")
        except requests.exceptions.Timeout:
            raise TransportError(f"Timeout: {url}")
        try:
            body = resp.json() if resp.content else None
        except ValueError:
            body = None
        if resp.status_code not in expected:
            if isinstance(body, dict) and body.get("errors"):
                raise RemoteQueryError(_first_error_message(body["errors"]))
            msg = json.dumps(body)[:400] if body is not None else resp.text[:400]
            raise TransportError(f"Xray {resp.status_code} {method} {path}: {msg}",
                                 status_code=resp.status_code, body=body)
        return body

    # ── GraphQL ──────────────────────────────────────────────────────────────

    def graphql(self, query: str, variables: dict = None) -> dict:
        body = self._request("POST", "/v2/graphql",
                             json_body={"query": query, "variables": variables or {}},
                             timeout=GRAPHQL_TIMEOUT)
        if not isinstance(body, dict):
            raise RemoteQueryError("Xray GraphQL returned an empty response")
        if body.get("errors"):
            raise RemoteQueryError(_first_error_message(body["errors"]))
        return body.get("data") or {}

    # ── Bulk import ──────────────────────────────────────────────────────────

    def submit_bulk_import(self, records: list, project_key: Optional[str] = None) -> str:
        """Submit records for creation; returns the Xray job id without waiting."""
        target = project_key or (records[0].get("projectKey") if records else None)
        if not target:
            raise SubmissionError("No project key specified")
        payload = to_bulk_import_format(records, target)
        try:
            body = self._request("POST", "/v1/import/test/bulk",
                                 json_body=payload, timeout=IMPORT_TIMEOUT)
        except TransportError as exc:
            raise SubmissionError(f"Import failed: {exc.remote_message}") from exc
        except RemoteQueryError as exc:
            raise SubmissionError(f"Import failed: {exc}") from exc
        job_id = body.get("jobId") if isinstance(body, dict) else None
        if not job_id:
            raise SubmissionError("Import completed but no jobId returned")
        log.debug("Bulk import accepted for %s: job %s", target, job_id)
        return job_id

    def get_job_status(self, job_id: str) -> dict:
        body = self._request("GET", f"/v1/import/test/bulk/{job_id}/status",
                             timeout=STATUS_TIMEOUT)
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise TransportError(f"Unexpected job status payload for {job_id}: "
                                 f"{json.dumps(body)[:300]}", body=body)
        return body

    def poll_job(self, job_id: str, max_attempts: int = POLL_MAX_ATTEMPTS,
                 interval_ms: int = POLL_INTERVAL_MS,
                 cancel: Optional[CancelToken] = None) -> JobStatusResult:
        """
        Poll until the job is successful / failed, or `max_attempts` reads have
        been made (timed-out). Business failures are never retried. A transport
        failure on a status read propagates.
        """
        cancel = cancel or CancelToken()
        for attempt in range(1, max_attempts + 1):
            cancel.raise_if_cancelled("Import cancelled while waiting for the Xray job")
            body   = self.get_job_status(job_id)
            status = body.get("status")
            result = body.get("result")
            log.debug("Job %s attempt %d/%d: %s", job_id, attempt, max_attempts, status)

            if status == JOB_SUCCESSFUL:
                return JobStatusResult(True, JOB_SUCCESSFUL, job_id=job_id,
                                       issues=extract_created_issues(result),
                                       attempts=attempt)
            if status == JOB_FAILED:
                log.error("Xray import job %s failed: %s", job_id, json.dumps(body)[:1000])
                return JobStatusResult(False, JOB_FAILED, job_id=job_id,
                                       error=extract_job_error(result),
                                       details=result, attempts=attempt)

            if attempt < max_attempts and cancel.wait(interval_ms / 1000.0):
                raise ImportCancelledError("Import cancelled while waiting for the Xray job")

        return JobStatusResult(False, JOB_TIMED_OUT, job_id=job_id,
                               error="Job status polling timed out",
                               attempts=max_attempts)

    # ── Read queries ─────────────────────────────────────────────────────────

    def _list_entities(self, query: str, root: str, project_key: str,
                       with_count: bool = False) -> list:
        data = self.graphql(query, {"jql": f"project = '{project_key}'", "limit": QUERY_LIMIT})
        rows = []
        for row in _results(data.get(root)):
            jira = row.get("jira") or {}
            entity = {"issueId": row.get("issueId"),
                      "key":     jira.get("key") or "",
                      "summary": jira.get("summary") or ""}
            if with_count:
                entity["testCount"] = (row.get("tests") or {}).get("total") or 0
            rows.append(entity)
        return rows

    def list_test_plans(self, project_key: str) -> list:
        return self._list_entities(_TEST_PLANS_QUERY, "getTestPlans", project_key, True)

    def list_test_executions(self, project_key: str) -> list:
        return self._list_entities(_TEST_EXECUTIONS_QUERY, "getTestExecutions",
                                   project_key, True)

    def list_test_sets(self, project_key: str) -> list:
        return self._list_entities(_TEST_SETS_QUERY, "getTestSets", project_key, True)

    def list_preconditions(self, project_key: str) -> list:
        return self._list_entities(_PRECONDITIONS_QUERY, "getPreconditions", project_key)

    def get_folder(self, project_id: str, path: str = "/") -> dict:
        data = self.graphql(_FOLDER_QUERY, {"projectId": project_id, "path": path})
        return data.get("getFolder") or {}

    def get_project_id(self, project_key: str) -> str:
        data = self.graphql(_PROJECT_SETTINGS_QUERY, {"projectIdOrKey": project_key})
        project_id = (data.get("getProjectSettings") or {}).get("projectId")
        if not project_id:
            raise RemoteQueryError(f"Could not resolve project ID for {project_key}")
        return str(project_id)

    def get_test_links(self, issue_id: str) -> dict:
        data = self.graphql(_TEST_LINKS_QUERY, {"issueId": issue_id})
        test = data.get("getTest")
        if not test:
            raise RemoteQueryError(f"Test {issue_id} not found in Xray")

        def _entities(name: str) -> list:
            return [{"issueId": e.get("issueId"), "key": (e.get("jira") or {}).get("key") or ""}
                    for e in _results(test.get(name))]

        return {
            "issueId":        test.get("issueId"),
            "key":            (test.get("jira") or {}).get("key") or "",
            "testPlans":      _entities("testPlans"),
            "testExecutions": _entities("testExecutions"),
            "testSets":       _entities("testSets"),
            "preconditions":  _entities("preconditions"),
            "folder":         (test.get("folder") or {}).get("path"),
        }

    # ── Mutations ────────────────────────────────────────────────────────────

    def _mutate(self, name: str, mutation: str, variables: dict) -> dict:
        return self.graphql(mutation, variables).get(name) or {}

    def add_tests_to_test_plan(self, test_plan_id: str, test_issue_ids: list) -> dict:
        name = "addTestsToTestPlan"
        return self._mutate(name, _collection_mutation(name, "addedTests"),
                            {"issueId": test_plan_id, "testIssueIds": test_issue_ids})

    def add_tests_to_test_execution(self, test_execution_id: str, test_issue_ids: list) -> dict:
        name = "addTestsToTestExecution"
        return self._mutate(name, _collection_mutation(name, "addedTests"),
                            {"issueId": test_execution_id, "testIssueIds": test_issue_ids})

    def add_tests_to_test_set(self, test_set_id: str, test_issue_ids: list) -> dict:
        name = "addTestsToTestSet"
        return self._mutate(name, _collection_mutation(name, "addedTests"),
                            {"issueId": test_set_id, "testIssueIds": test_issue_ids})

    def add_tests_to_folder(self, project_id: str, folder_path: str,
                            test_issue_ids: list) -> dict:
        name = "addTestsToFolder"
        return self._mutate(name, _folder_mutation(name),
                            {"projectId": project_id, "path": folder_path,
                             "testIssueIds": test_issue_ids})

    def add_preconditions_to_test(self, test_issue_id: str, precondition_ids: list) -> dict:
        name = "addPreconditionsToTest"
        return self._mutate(name,
                            _collection_mutation(name, "addedPreconditions",
                                                 "preconditionIssueIds"),
                            {"issueId": test_issue_id,
                             "preconditionIssueIds": precondition_ids})


# ─────────────────────────────────────────────────────────────────────────────
# Link request
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class LinkRequest:
    test_plan_ids:      list = field(default_factory=list)
    test_execution_ids: list = field(default_factory=list)
    test_set_ids:       list = field(default_factory=list)
    precondition_ids:   list = field(default_factory=list)
    folder_path:        str = "/"
    project_id:         str = ""
    # issue id → "PROJ-10: Plan A"; labels only
    displays:           dict = field(default_factory=dict)

    @property
    def folder_enabled(self) -> bool:
        return bool(self.folder_path) and bool(self.project_id)

    @property
    def expected_folder(self) -> Optional[str]:
        if self.folder_enabled and self.folder_path != "/":
            return self.folder_path
        return None

    def display(self, issue_id: str) -> Optional[str]:
        return self.displays.get(issue_id)

    def count_links(self) -> int:
        return len(plan_link_steps(self))

    @classmethod
    def from_record_linking(cls, linking: Optional[dict]) -> "LinkRequest":
        """Parse the "xrayLinking" block of a local record."""
        linking = linking or {}
        displays: dict = {}
        for key in ("testPlanDisplays", "testExecutionDisplays",
                    "testSetDisplays", "preconditionDisplays"):
            for entry in linking.get(key) or []:
                if entry.get("id") and entry.get("display"):
                    displays[entry["id"]] = entry["display"]
        return cls(
            test_plan_ids=list(linking.get("testPlanIds") or []),
            test_execution_ids=list(linking.get("testExecutionIds") or []),
            test_set_ids=list(linking.get("testSetIds") or []),
            precondition_ids=list(linking.get("preconditionIds") or []),
            folder_path=linking.get("folderPath") if linking.get("folderPath") is not None else "/",
            project_id=str(linking.get("projectId") or ""),
            displays=displays,
        )


def plan_link_steps(link_request: LinkRequest) -> list:
    """
    (step_id, kind, target_ids) for every link operation of a request, in the
    one order used everywhere: plans, executions, sets, folder, preconditions.
    """
    planned = []
    for i, plan_id in enumerate(link_request.test_plan_ids):
        planned.append((f"plan-{i}", KIND_PLAN, [plan_id]))
    for i, exec_id in enumerate(link_request.test_execution_ids):
        planned.append((f"exec-{i}", KIND_EXECUTION, [exec_id]))
    for i, set_id in enumerate(link_request.test_set_ids):
        planned.append((f"set-{i}", KIND_SET, [set_id]))
    if link_request.folder_enabled:
        planned.append(("folder", KIND_FOLDER, [link_request.folder_path]))
    if link_request.precondition_ids:
        planned.append(("preconditions", KIND_PRECONDITION, list(link_request.precondition_ids)))
    return planned


# ─────────────────────────────────────────────────────────────────────────────
# Linking  (concurrent fan-out, per-link failure isolation)
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LinkOutcome:
    step_id: str
    target_kind: str
    target_label: str
    target_ids: tuple
    succeeded: bool
    error_message: Optional[str] = None
    warning: Optional[str] = None

    def describe(self) -> str:
        return f"{KIND_LABELS.get(self.target_kind, self.target_kind)}: {self.target_label}"


@dataclass
class LinkOperation:
    step_id: str
    kind: str
    label: str
    target_ids: list
    call: Callable[[], dict]
    # payload field holding the added count; None when the mutation has none
    count_field: Optional[str] = None

    def outcome(self, succeeded: bool, error: Optional[str] = None,
                warning: Optional[str] = None) -> LinkOutcome:
        return LinkOutcome(self.step_id, self.kind, self.label, tuple(self.target_ids),
                           succeeded, error, warning)


def _link_label(link_request: LinkRequest, kind: str, target_ids: list) -> str:
    if kind == KIND_FOLDER:
        return link_request.folder_path
    if kind == KIND_PRECONDITION:
        return f"{len(target_ids)} precondition(s)"
    return link_request.display(target_ids[0]) or target_ids[0]


def build_link_operations(client: XrayClient, issue_id: str,
                          link_request: LinkRequest) -> list:
    """Every attach operation for `issue_id`, built up front in dispatch order."""
    operations = []
    for step_id, kind, target_ids in plan_link_steps(link_request):
        if kind == KIND_PLAN:
            call = partial(client.add_tests_to_test_plan, target_ids[0], [issue_id])
            count_field = "addedTests"
        elif kind == KIND_EXECUTION:
            call = partial(client.add_tests_to_test_execution, target_ids[0], [issue_id])
            count_field = "addedTests"
        elif kind == KIND_SET:
            call = partial(client.add_tests_to_test_set, target_ids[0], [issue_id])
            count_field = "addedTests"
        elif kind == KIND_FOLDER:
            call = partial(client.add_tests_to_folder, link_request.project_id,
                           link_request.folder_path, [issue_id])
            count_field = None
        else:
            call = partial(client.add_preconditions_to_test, issue_id, list(target_ids))
            count_field = "addedPreconditions"
        operations.append(LinkOperation(step_id, kind,
                                        _link_label(link_request, kind, target_ids),
                                        list(target_ids), call, count_field))
    return operations


def _payload_warning(payload: dict) -> Optional[str]:
    warning = payload.get("warning")
    if not warning and payload.get("warnings"):
        warning = "; ".join(str(w) for w in payload["warnings"])
    return str(warning) if warning else None


def _check_link_payload(op: LinkOperation, payload: dict) -> None:
    """A mutation that "succeeds" without adding anything is a soft failure."""
    if op.count_field is None:
        return
    added = _count(payload.get(op.count_field))
    if added == 0:
        msg = "Nothing was linked (Xray reported 0 added)"
        warning = _payload_warning(payload)
        if warning:
            msg += f": {warning}"
        raise LinkError(msg)


def _run_link_operation(op: LinkOperation, cancel: CancelToken) -> LinkOutcome:
    if cancel.cancelled:
        return op.outcome(False, "Cancelled before the link was attempted")
    try:
        payload = op.call() or {}
        _check_link_payload(op, payload)
    except Exception as exc:
        log.debug("Link %s (%s) failed: %s", op.step_id, op.label, exc)
        return op.outcome(False, str(exc) or exc.__class__.__name__)
    return op.outcome(True, warning=_payload_warning(payload))


def execute_link_operations(operations: list, cancel: Optional[CancelToken] = None,
                            on_outcome: Optional[Callable[[LinkOutcome], None]] = None) -> list:
    """
    Dispatch all operations at once and wait for every one of them.
    `on_outcome` fires in the calling thread as each link completes; the
    returned list is always in build order, whatever the completion order.
    """
    if not operations:
        return []
    cancel = cancel or CancelToken()
    outcomes: dict = {}
    with ThreadPoolExecutor(max_workers=len(operations)) as executor:
        futures = {executor.submit(_run_link_operation, op, cancel): op
                   for op in operations}
        for future in as_completed(futures):
            outcome = future.result()
            outcomes[futures[future].step_id] = outcome
            if on_outcome is not None:
                on_outcome(outcome)
    return [outcomes[op.step_id] for op in operations]


def link_issue(client: XrayClient, issue_id: str, link_request: LinkRequest,
               cancel: Optional[CancelToken] = None,
               on_outcome: Optional[Callable[[LinkOutcome], None]] = None) -> list:
    return execute_link_operations(build_link_operations(client, issue_id, link_request),
                                   cancel, on_outcome)


# ─────────────────────────────────────────────────────────────────────────────
# Reconciliation
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class CollectionReconciliation:
    expected: list = field(default_factory=list)
    found:    list = field(default_factory=list)
    missing:  list = field(default_factory=list)

    @classmethod
    def compare(cls, expected: list, found: list) -> "CollectionReconciliation":
        present = set(found)
        return cls(list(expected), list(found), [i for i in expected if i not in present])


@dataclass
class FolderReconciliation:
    expected: Optional[str] = None
    found:    Optional[str] = None
    is_consistent: bool = True


@dataclass
class ReconciliationResult:
    is_validated:    bool
    test_plans:      CollectionReconciliation = field(default_factory=CollectionReconciliation)
    test_executions: CollectionReconciliation = field(default_factory=CollectionReconciliation)
    test_sets:       CollectionReconciliation = field(default_factory=CollectionReconciliation)
    preconditions:   CollectionReconciliation = field(default_factory=CollectionReconciliation)
    folder:          FolderReconciliation = field(default_factory=FolderReconciliation)
    error:           Optional[str] = None

    @classmethod
    def not_validated(cls, error: Optional[str] = None) -> "ReconciliationResult":
        return cls(is_validated=False, error=error)

    def collections(self) -> list:
        return [
            (KIND_PLAN,         self.test_plans),
            (KIND_EXECUTION,    self.test_executions),
            (KIND_SET,          self.test_sets),
            (KIND_PRECONDITION, self.preconditions),
        ]

    @property
    def has_missing(self) -> bool:
        return (any(c.missing for _, c in self.collections())
                or not self.folder.is_consistent)


def validate_links(client: XrayClient, issue_id: str,
                   link_request: LinkRequest) -> ReconciliationResult:
    """
    Re-read the issue's actual links and diff them against `link_request`.
    Never raises: a failed read yields an unvalidated result, which is not
    the same thing as a failed link.
    """
    try:
        links = client.get_test_links(issue_id)
    except Exception as exc:
        err = ValidationReadError(f"Could not read links of {issue_id}: {exc}")
        log.warning("%s", err)
        return ReconciliationResult.not_validated(str(err))

    def _found(name: str) -> list:
        return [e.get("issueId") for e in links.get(name) or []]

    expected_folder = link_request.expected_folder
    found_folder    = links.get("folder") or None
    return ReconciliationResult(
        is_validated=True,
        test_plans=CollectionReconciliation.compare(
            link_request.test_plan_ids, _found("testPlans")),
        test_executions=CollectionReconciliation.compare(
            link_request.test_execution_ids, _found("testExecutions")),
        test_sets=CollectionReconciliation.compare(
            link_request.test_set_ids, _found("testSets")),
        preconditions=CollectionReconciliation.compare(
            link_request.precondition_ids, _found("preconditions")),
        folder=FolderReconciliation(
            expected_folder, found_folder,
            # Xray may answer with a fully qualified path
            not expected_folder or bool(found_folder and expected_folder in found_folder),
        ),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Progress steps
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ImportStep:
    id: str
    label: str
    status: str = STEP_PENDING
    error: Optional[str] = None


def _step_label(link_request: LinkRequest, kind: str, target_ids: list) -> str:
    if kind == KIND_FOLDER:
        return f"Adding to folder {link_request.folder_path}..."
    if kind == KIND_PRECONDITION:
        return f"Linking {len(target_ids)} precondition(s)..."
    return f"Linking to {link_request.display(target_ids[0]) or KIND_LABELS[kind]}..."


def start_import(link_request: LinkRequest) -> list:
    """The fixed, ordered step list of a run. Pure; no network."""
    steps = [ImportStep(STEP_CREATE, "Creating test in Jira...")]
    for step_id, kind, target_ids in plan_link_steps(link_request):
        steps.append(ImportStep(step_id, _step_label(link_request, kind, target_ids)))
    return steps


class ImportProgress:
    """
    Step list of a single run. Steps only move forward
    (pending → in-progress → completed | failed); a finished step is final.
    """

    def __init__(self, steps: list,
                 on_step: Optional[Callable[[ImportStep], None]] = None) -> None:
        self.steps   = steps
        self.on_step = on_step
        self._by_id  = {s.id: s for s in steps}

    def get(self, step_id: str) -> ImportStep:
        return self._by_id[step_id]

    def update(self, step_id: str, status: str, error: Optional[str] = None) -> None:
        step = self._by_id[step_id]
        if _STEP_RANK[status] <= _STEP_RANK[step.status] or step.status in (STEP_COMPLETED, STEP_FAILED):
            raise ValueError(f"Step {step_id!r} cannot move from {step.status} to {status}")
        step.status = status
        step.error  = error
        if self.on_step is not None:
            self.on_step(replace(step))

    def snapshot(self) -> list:
        return [replace(s) for s in self.steps]


# ─────────────────────────────────────────────────────────────────────────────
# Local records
# ─────────────────────────────────────────────────────────────────────────────

def _iter_record_files(records_dir: str):
    for root, _dirs, files in os.walk(records_dir):
        for name in sorted(files):
            if name.endswith(".json"):
                yield os.path.join(root, name)


def _read_record_file(path: str) -> Optional[dict]:
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        log.warning("Skipping unreadable record %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def list_records(records_dir: str = RECORDS_DIR) -> list:
    """All local records, most recently updated first."""
    records = [r for r in (_read_record_file(p) for p in _iter_record_files(records_dir))
               if r and r.get("id")]
    records.sort(key=lambda r: r.get("updatedAt") or 0, reverse=True)
    return records


def _find_record(record_id: str, records_dir: str) -> tuple:
    for path in _iter_record_files(records_dir):
        record = _read_record_file(path)
        if record and record.get("id") == record_id:
            return record, path
    raise RecordNotFoundError(f"Test case {record_id} not found in {records_dir}")


def load_record(record_id: str, records_dir: str = RECORDS_DIR) -> dict:
    return _find_record(record_id, records_dir)[0]


def mark_record_imported(record_id: str, issue: RemoteIssueRef,
                         records_dir: str = RECORDS_DIR) -> dict:
    record, path = _find_record(record_id, records_dir)
    record["status"]      = "imported"
    record["testKey"]     = issue.key
    record["testIssueId"] = issue.issue_id
    record["updatedAt"]   = int(time.time() * 1000)
    write_json_atomic(path, record)
    return record


# ─────────────────────────────────────────────────────────────────────────────
# Orchestration
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class LinkingResult:
    link_outcomes: list
    reconciliation: ReconciliationResult

    @property
    def failed_links(self) -> list:
        return [o for o in self.link_outcomes if not o.succeeded]

    @property
    def has_errors(self) -> bool:
        return bool(self.failed_links) or self.reconciliation.has_missing


@dataclass
class OrchestrationResult:
    issue: Optional[RemoteIssueRef] = None
    link_outcomes: list = field(default_factory=list)
    reconciliation: ReconciliationResult = field(
        default_factory=ReconciliationResult.not_validated)
    error: Optional[str] = None
    error_type: Optional[str] = None
    steps: list = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None and self.issue is not None

    @property
    def failed_links(self) -> list:
        return [o for o in self.link_outcomes if not o.succeeded]

    @property
    def has_errors(self) -> bool:
        return (self.error is not None
                or bool(self.failed_links)
                or self.reconciliation.has_missing)


class ImportOrchestrator:
    """
    Create → poll → link → validate, for one local record at a time.
    Each call owns its own progress list; the orchestrator itself holds no
    per-run state and can serve several runs.
    """

    def __init__(self, client: XrayClient,
                 record_loader: Callable[[str], dict] = load_record,
                 poll_attempts: int = POLL_MAX_ATTEMPTS,
                 poll_interval_ms: int = POLL_INTERVAL_MS) -> None:
        self.client           = client
        self.record_loader    = record_loader
        self.poll_attempts    = poll_attempts
        self.poll_interval_ms = poll_interval_ms

    @staticmethod
    def start_import(link_request: LinkRequest) -> list:
        return start_import(link_request)

    def _create_issue(self, record_id: str, project_key: Optional[str],
                      cancel: CancelToken) -> RemoteIssueRef:
        record = self.record_loader(record_id)
        cancel.raise_if_cancelled()
        job_id = self.client.submit_bulk_import([record], project_key)
        job = self.client.poll_job(job_id, self.poll_attempts, self.poll_interval_ms, cancel)
        job.raise_for_status()
        if not job.issues:
            raise JobFailedError("Import job returned no created issue", details=job.details)
        return job.issues[0]

    def execute_import(self, record_id: str, project_key: Optional[str],
                       link_request: LinkRequest,
                       on_step: Optional[Callable[[ImportStep], None]] = None,
                       cancel: Optional[CancelToken] = None,
                       steps: Optional[list] = None) -> OrchestrationResult:
        cancel   = cancel or CancelToken()
        progress = ImportProgress(steps if steps is not None else start_import(link_request),
                                  on_step)

        progress.update(STEP_CREATE, STEP_IN_PROGRESS)
        try:
            issue = self._create_issue(record_id, project_key, cancel)
        except FATAL_ERRORS as exc:
            log.error("Import of %s failed: %s", record_id, exc)
            progress.update(STEP_CREATE, STEP_FAILED, str(exc))
            # remaining steps stay pending; nothing after the failure ran
            return OrchestrationResult(error=str(exc), error_type=type(exc).__name__,
                                       steps=progress.snapshot())
        progress.update(STEP_CREATE, STEP_COMPLETED)

        linking = self.execute_linking(issue.issue_id, link_request,
                                       cancel=cancel, progress=progress)
        return OrchestrationResult(issue=issue,
                                   link_outcomes=linking.link_outcomes,
                                   reconciliation=linking.reconciliation,
                                   steps=progress.snapshot())

    def execute_linking(self, issue_id: str, link_request: LinkRequest,
                        cancel: Optional[CancelToken] = None,
                        on_outcome: Optional[Callable[[LinkOutcome], None]] = None,
                        progress: Optional[ImportProgress] = None) -> LinkingResult:
        """Link an existing issue and reconcile. Usable without the create step."""
        cancel     = cancel or CancelToken()
        operations = build_link_operations(self.client, issue_id, link_request)
        if progress is not None:
            for op in operations:
                progress.update(op.step_id, STEP_IN_PROGRESS)

        def _on_outcome(outcome: LinkOutcome) -> None:
            if progress is not None:
                progress.update(outcome.step_id,
                                STEP_COMPLETED if outcome.succeeded else STEP_FAILED,
                                outcome.error_message)
            if on_outcome is not None:
                on_outcome(outcome)

        outcomes = execute_link_operations(operations, cancel, _on_outcome)
        if cancel.cancelled:
            reconciliation = ReconciliationResult.not_validated("Cancelled before validation")
        else:
            reconciliation = validate_links(self.client, issue_id, link_request)
        return LinkingResult(outcomes, reconciliation)


# ─────────────────────────────────────────────────────────────────────────────
# Console report
# ─────────────────────────────────────────────────────────────────────────────

_STEP_MARKS: dict = {
    STEP_IN_PROGRESS: "  ...   ",
    STEP_COMPLETED:   "  OK    ",
    STEP_FAILED:      "  FAIL  ",
}


def print_step(step: ImportStep) -> None:
    line = f"{_STEP_MARKS.get(step.status, '        ')}{step.label}"
    if step.error:
        line += f"  ({step.error})"
    print(line)


def print_import_report(result: OrchestrationResult, jira_url: Optional[str] = None) -> None:
    if not result.success:
        print(f"\n  ✗  Import failed: {result.error}")
        return

    issue = result.issue
    link = f"  {jira_url.rstrip('/')}/browse/{issue.key}" if jira_url else ""
    verdict = "imported with warnings" if result.has_errors else "imported"
    print(f"\n  ✓ {issue.key} {verdict}{link}")

    if result.link_outcomes:
        print(f"\n  Links ({len(result.link_outcomes)}):")
        for o in result.link_outcomes:
            if o.succeeded:
                suffix = f"  — {o.warning}" if o.warning else ""
                print(f"  OK    {o.describe()}{suffix}")
            else:
                print(f"  FAIL  {o.describe()}  ({o.error_message})")

    rec = result.reconciliation
    if not rec.is_validated:
        print(f"\n  WARN  Links could not be verified: {rec.error or 'validation skipped'}")
        return
    missing = [(k, c.missing) for k, c in rec.collections() if c.missing]
    for kind, ids in missing:
        print(f"  WARN  {KIND_LABELS[kind]} not linked in Xray: {', '.join(ids)}")
    if not rec.folder.is_consistent:
        print(f"  WARN  Folder is {rec.folder.found or '(none)'}, "
              f"expected {rec.folder.expected}")
    if not missing and rec.folder.is_consistent:
        print("\n  ✓ Verified: every requested link exists in Xray.")


# ─────────────────────────────────────────────────────────────────────────────
# Link selection  (records without an "xrayLinking" block)
# ─────────────────────────────────────────────────────────────────────────────

def _pick_entities(kind_label: str, entities: list) -> list:
    """Numbered pick list; blank input picks nothing."""
    if not entities:
        print(f"  SKIP  No {kind_label}s in this project")
        return []
    print(f"\n  {kind_label}s:")
    for i, e in enumerate(entities, 1):
        count = f"  ({e['testCount']} tests)" if "testCount" in e else ""
        print(f"    {i:>3}.  {e['key']}: {(e.get('summary') or '')[:60]}{count}")
    raw = prompt(f"  {kind_label}s to link (numbers, comma-separated)", default="")
    chosen = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        idx = int(part) - 1 if part.isdigit() else -1
        if 0 <= idx < len(entities):
            if entities[idx] not in chosen:
                chosen.append(entities[idx])
        else:
            print(f"  WARN  Ignoring {part!r}")
    return chosen


def _folder_names(folder: dict) -> list:
    names = []
    for child in folder.get("folders") or []:
        if isinstance(child, dict):
            names.append(child.get("path") or child.get("name") or "")
        else:
            names.append(str(child))
    return [n for n in names if n]


def choose_links(client: XrayClient, project_key: str) -> LinkRequest:
    """Build a LinkRequest by picking from the project's Xray collections."""
    request = LinkRequest()
    pickers = [
        ("Test Plan",      client.list_test_plans,      request.test_plan_ids),
        ("Test Execution", client.list_test_executions, request.test_execution_ids),
        ("Test Set",       client.list_test_sets,       request.test_set_ids),
        ("Precondition",   client.list_preconditions,   request.precondition_ids),
    ]
    for label, fetch, ids in pickers:
        try:
            entities = fetch(project_key)
        except XrayError as exc:
            print(f"  WARN  Could not list {label}s: {exc}")
            continue
        for entity in _pick_entities(label, entities):
            ids.append(entity["issueId"])
            request.displays[entity["issueId"]] = f"{entity['key']}: {entity.get('summary') or ''}"

    try:
        request.project_id = client.get_project_id(project_key)
    except XrayError as exc:
        print(f"  SKIP  Folder linking disabled: {exc}")
        return request
    try:
        root = client.get_folder(request.project_id, "/")
    except XrayError as exc:
        print(f"  WARN  Could not read the folder tree: {exc}")
        root = {}
    names = _folder_names(root)
    if names:
        print(f"\n  Folders under /: {', '.join(names)}")
    request.folder_path = prompt("  Folder path", default="/") or "/"
    return request


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def _choose_record(records: list) -> Optional[dict]:
    for i, rec in enumerate(records, 1):
        status = rec.get("status") or "draft"
        print(f"    {i:>3}.  [{rec.get('projectKey') or '?'}]  "
              f"{(rec.get('summary') or '(no summary)')[:60]}  ({status})")
    raw = prompt("\n  Record number or id")
    try:
        idx = int(raw) - 1
        if 0 <= idx < len(records):
            return records[idx]
    except ValueError:
        pass
    return next((r for r in records if r.get("id") == raw), None)


def main() -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("XRAY_IMPORT_DEBUG") else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    W = 80
    print()
    print("╔" + "═" * (W - 2) + "╗")
    print("║" + "  XRAY IMPORT & LINK".center(W - 2) + "║")
    print("╚" + "═" * (W - 2) + "╝")
    print()

    # ── Step 1: Xray credentials ─────────────────────────────────────────────
    config = load_config()
    print("Step 1 — Xray API credentials")
    if not config.get("xrayClientId") or not config.get("xrayClientSecret"):
        print("  Generate at: Jira → Apps → Xray → API Keys")
        config["xrayClientId"]     = prompt("Xray client id")
        config["xrayClientSecret"] = prompt_secret("Xray client secret")
        config["jiraBaseUrl"]      = prompt("Jira base URL", default=config.get("jiraBaseUrl"))
        ok, err = validate_credentials(Credentials.from_config(config),
                                       config.get("xrayBaseUrl") or XRAY_BASE_URL)
        if not ok:
            print(f"  Error: {err}")
            sys.exit(1)
        save_config(config)
        print(f"  ✓ Credentials saved to {CONFIG_FILE}")
    else:
        print(f"  ✓ Using credentials from {CONFIG_FILE}")

    client = XrayClient.from_config(config, ConfigFileTokenStore(CONFIG_FILE))
    orchestrator = ImportOrchestrator(client)

    # ── Step 2: Pick a local record ──────────────────────────────────────────
    print(f"\nStep 2 — Test case  ({RECORDS_DIR})")
    records = list_records()
    if not records:
        print(f"  Error: no test cases found under {RECORDS_DIR}.")
        sys.exit(1)
    record = _choose_record(records)
    if not record:
        print("  Error: no such test case.")
        sys.exit(1)

    # ── Step 3: Target project + links ───────────────────────────────────────
    print("\nStep 3 — Target")
    project_key = prompt("  Jira project key", default=record.get("projectKey")).upper()
    if record.get("xrayLinking"):
        link_request = LinkRequest.from_record_linking(record["xrayLinking"])
    else:
        print("  No saved links on this record; pick them from Xray.")
        link_request = choose_links(client, project_key)
    if link_request.folder_path not in ("", "/") and not link_request.project_id:
        try:
            link_request.project_id = client.get_project_id(project_key)
            print(f"  ✓ Project {project_key} → Xray project id {link_request.project_id}")
        except XrayError as exc:
            print(f"  SKIP  Folder linking disabled: {exc}")

    steps = orchestrator.start_import(link_request)
    print(f"\n  {len(steps)} step(s):")
    for step in steps:
        print(f"    • {step.label}")

    go = prompt("\nProceed? (y/n)", default="y").lower()
    if go not in ("y", "yes"):
        print("Aborted.")
        sys.exit(0)

    # ── Import ───────────────────────────────────────────────────────────────
    print("\n" + "─" * W)
    result = orchestrator.execute_import(record["id"], project_key, link_request,
                                         on_step=print_step, steps=steps)
    print("─" * W)
    print_import_report(result, config.get("jiraBaseUrl"))

    if result.success:
        mark_record_imported(record["id"], result.issue)
        print(f"\n  Record {record['id']} marked as imported.")
    print()
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n\nAborted.")
        sys.exit(0)
