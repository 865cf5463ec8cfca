"""AskMe query core
=================

Core logic behind the "Ask me" screen of the legal learning app.  A user
submits a free-text question, the question is forwarded to an
OpenAI-compatible chat completion service and the outcome is tracked by a
small state machine that the front end renders.

The module is split into the following layers:

* **Configuration** – endpoint, model and credential are read from
  environment variables or a JSON file in the working directory.
* **Completion client** – one request/response exchange per question, with
  every failure classified into a closed set of :class:`ErrorKind` values.
* **Query history** – a deduplicated, newest-first record of questions that
  received an answer during the current session.
* **Query session** – the state machine that owns the current
  :data:`SessionState`, discards responses of superseded requests and tells
  the front end when an attempt has finished.

Nothing in here imports Tkinter so the core can be exercised headless; the
desktop front end lives in :mod:`askme_gui`.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import requests


# ---------------------------------------------------------------------------
# Logging infrastructure
# ---------------------------------------------------------------------------

def _build_logger() -> logging.Logger:
    """Configure the ``askme`` logger with a single stream handler.

    Diagnostic detail about failed requests (status codes, raw error bodies)
    is only ever written here and never rendered in the UI.
    """

    logger = logging.getLogger("askme")
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


LOGGER = _build_logger()


def configure_logging(level: str) -> None:
    """Apply the configured log level to the module logger."""

    LOGGER.setLevel(level.upper())


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(RuntimeError):
    """Raised when the application configuration is invalid."""


class EmptyQueryError(ValueError):
    """Raised when submitted text is empty once surrounding whitespace is removed."""


class ErrorKind(Enum):
    """Closed set of reasons a completion request can fail."""

    MISSING_CREDENTIAL = "missing_credential"
    NETWORK_UNAVAILABLE = "network_unavailable"
    TRANSPORT_ERROR = "transport_error"
    MALFORMED_RESPONSE = "malformed_response"


class CompletionError(RuntimeError):
    """Base class for classified completion failures.

    ``detail`` holds diagnostic text (raw error bodies, exception messages)
    meant for the log only.
    """

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.detail = detail
        self.status_code = status_code


class MissingCredentialError(CompletionError):
    """Raised before any network I/O when no API key is available."""

    kind = ErrorKind.MISSING_CREDENTIAL


class NetworkUnavailableError(CompletionError):
    """Raised when no response was received from the service."""

    kind = ErrorKind.NETWORK_UNAVAILABLE


class TransportError(CompletionError):
    """Raised when the service answers with a non-success HTTP status."""

    kind = ErrorKind.TRANSPORT_ERROR


class MalformedResponseError(CompletionError):
    """Raised when a successful response does not have the expected shape."""

    kind = ErrorKind.MALFORMED_RESPONSE


# ---------------------------------------------------------------------------
# Configuration handling
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_MODEL = "mixtral-8x7b-32768"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class AppPaths:
    """Container for filesystem paths used by the application."""

    base_dir: Path = field(default_factory=lambda: Path.cwd())
    config_file_name: str = "askme.json"

    @property
    def config_path(self) -> Path:
        return self.base_dir / self.config_file_name


@dataclass(slots=True)
class AppConfig:
    """Completion endpoint settings and the injected credential."""

    api_url: str = DEFAULT_API_URL
    model_name: str = DEFAULT_MODEL
    api_key: str = ""
    verify_tls: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, paths: AppPaths) -> "AppConfig":
        """Load configuration from environment variables or disk.

        Precedence order (highest to lowest): environment variables, JSON
        configuration file, defaults.  A minimal file looks like:

        ```json
        {
            "api_key": "gsk_...",
            "model_name": "mixtral-8x7b-32768"
        }
        ```

        The API key is usually supplied through ``GROQ_API_KEY`` instead.
        """

        config_data: Dict[str, Any] = {}
        if paths.config_path.exists():
            try:
                config_data = json.loads(paths.config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigurationError(
                    f"Configuration file {paths.config_path} contains invalid JSON"
                ) from exc
            if not isinstance(config_data, dict):
                raise ConfigurationError(
                    f"Configuration file {paths.config_path} must contain a JSON object"
                )

        try:
            verify_tls = bool(
                json.loads(
                    os.getenv(
                        "ASKME_VERIFY_TLS",
                        json.dumps(config_data.get("verify_tls", True)),
                    )
                )
            )
        except json.JSONDecodeError as exc:
            raise ConfigurationError("ASKME_VERIFY_TLS must be true or false") from exc

        file_key = config_data.get("api_key")
        config = cls(
            api_url=os.getenv("ASKME_API_URL") or config_data.get("api_url") or DEFAULT_API_URL,
            model_name=os.getenv("ASKME_MODEL") or config_data.get("model_name") or DEFAULT_MODEL,
            api_key=os.getenv("GROQ_API_KEY") or ("" if file_key is None else str(file_key)),
            verify_tls=verify_tls,
            log_level=str(
                os.getenv("ASKME_LOG_LEVEL") or config_data.get("log_level") or "INFO"
            ).upper(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` for unusable settings.

        A missing API key is accepted here: requests made
        without one fail individually with ``MISSING_CREDENTIAL``.
        """

        parsed = urlparse(self.api_url or "")
        if parsed.scheme != "https" or not parsed.netloc:
            raise ConfigurationError(
                f"API URL must be an https URL with a host, got {self.api_url!r}"
            )
        if not self.model_name:
            raise ConfigurationError("Model name is required")
        if not isinstance(self.api_key, str):
            raise ConfigurationError("API key must be a string")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level {self.log_level!r}")

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key.strip())


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class MetricsTracker:
    """Tracks latency and failure counts of completion requests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._durations: List[float] = []
        self._failures: Dict[ErrorKind, int] = {}
        self._discarded = 0

    def record_success(self, duration: float) -> None:
        with self._lock:
            self._durations.append(duration)

    def record_failure(self, kind: ErrorKind) -> None:
        with self._lock:
            self._failures[kind] = self._failures.get(kind, 0) + 1

    def record_discarded(self) -> None:
        with self._lock:
            self._discarded += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            durations = list(self._durations)
            failures = dict(self._failures)
            discarded = self._discarded
        return {
            "count": len(durations),
            "mean": sum(durations) / len(durations) if durations else 0.0,
            "last": durations[-1] if durations else 0.0,
            "failures": sum(failures.values()),
            "failures_by_kind": {kind.value: total for kind, total in failures.items()},
            "discarded": discarded,
        }


# ---------------------------------------------------------------------------
# Input handling
# ---------------------------------------------------------------------------

class InputSanitiser:
    """Turn raw text field contents into a query."""

    @staticmethod
    def sanitise(text: str) -> str:
        """Trim surrounding whitespace; nothing else is normalised."""

        cleaned = text.strip()
        if not cleaned:
            raise EmptyQueryError("Query is empty")
        return cleaned


# ---------------------------------------------------------------------------
# Query history
# ---------------------------------------------------------------------------

class QueryHistory:
    """Newest-first record of answered queries without duplicates.

    The store lives for the application session only.  Pass ``lock`` to
    share a mutex with the owner so that history changes and session state
    changes are serialised together.
    """

    def __init__(self, lock: Optional[threading.RLock] = None) -> None:
        self._lock = lock if lock is not None else threading.RLock()
        self._entries: List[str] = []

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def insert(self, query: str) -> None:
        """Prepend ``query`` unless an equal entry is already recorded."""

        with self._lock:
            if query in self._entries:
                return
            self._entries.insert(0, query)

    def entries(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @staticmethod
    def select(query: str) -> str:
        """Return ``query`` unchanged so the UI can refill its input field."""

        return query

    def __contains__(self, query: object) -> bool:
        with self._lock:
            return query in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# HTTP client for the completion service
# ---------------------------------------------------------------------------

class CompletionClient:
    """Performs a single chat completion exchange per call.

    No retries are attempted; callers that want them wrap :meth:`request`.
    """

    def __init__(self, config: AppConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session if session is not None else requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def close(self) -> None:
        self._session.close()

    def request(self, prompt: str, credential: str) -> str:
        """Send ``prompt`` as a single user message and return the reply text."""

        if not credential or not credential.strip():
            LOGGER.warning("API key: Missing")
            raise MissingCredentialError("No API key configured")
        LOGGER.debug("API key: Present")

        payload = {
            "model": self._config.model_name,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            response = self._session.post(
                self._config.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {credential}"},
                verify=self._config.verify_tls,
            )
        except requests.RequestException as exc:
            raise NetworkUnavailableError(
                "Could not reach the completion service", detail=str(exc)
            ) from exc
        except (UnicodeError, ValueError) as exc:
            # e.g. a credential http.client cannot encode as latin-1
            raise NetworkUnavailableError(
                "Request could not be sent to the completion service",
                detail=f"{type(exc).__name__}: {exc}",
            ) from exc

        LOGGER.info("Response status: %s", response.status_code)
        if not 200 <= response.status_code < 300:
            body = response.text
            LOGGER.error("API error response: %s", body)
            raise TransportError(
                f"Completion service returned HTTP {response.status_code}",
                detail=body,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "Completion service returned invalid JSON", detail=response.text
            ) from exc
        return self._extract_content(data)

    @staticmethod
    def _extract_content(data: Any) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError(
                "Unexpected response structure from completion service",
                detail=json.dumps(data, default=str)[:2000],
            ) from exc
        if not isinstance(content, str):
            raise MalformedResponseError(
                "Completion content is not a string", detail=repr(content)
            )
        return content


# ---------------------------------------------------------------------------
# Session states
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Idle:
    """No request made yet, or the last result was cleared."""


@dataclass(frozen=True, slots=True)
class Pending:
    query: str


@dataclass(frozen=True, slots=True)
class Succeeded:
    query: str
    content: str


@dataclass(frozen=True, slots=True)
class Failed:
    query: str
    reason: ErrorKind
    status_code: Optional[int] = None


SessionState = Union[Idle, Pending, Succeeded, Failed]

IDLE_PROMPT = "Start searching legal topics or ask me anything!"
SEARCH_PLACEHOLDER = "Search for legal topics..."
PENDING_MESSAGE = "Searching..."
GENERIC_FAILURE_MESSAGE = "Error fetching response. Please try again."


def describe_state(state: SessionState) -> Tuple[str, str]:
    """Map a session state to the ``(text, tag)`` pair the UI renders.

    Every failure renders the same generic message; the failure kind and any
    diagnostic detail stay in the log.
    """

    if isinstance(state, Pending):
        return PENDING_MESSAGE, "pending"
    if isinstance(state, Succeeded):
        return state.content, "response"
    if isinstance(state, Failed):
        return GENERIC_FAILURE_MESSAGE, "error"
    return IDLE_PROMPT, "info"


# ---------------------------------------------------------------------------
# Query session orchestration
# ---------------------------------------------------------------------------

StateListener = Callable[[SessionState], None]
CompletionListener = Callable[[], None]
Dispatcher = Callable[[Callable[[], None]], None]


def _spawn_worker(job: Callable[[], None]) -> None:
    threading.Thread(target=job, name="QueryWorker", daemon=True).start()


class QuerySession:
    """Drives questions through the completion client and tracks the outcome.

    A new :meth:`submit` supersedes any request still in flight: each
    request captures a sequence number and its result is applied only if
    that number is still the latest when it completes.
    """

    def __init__(
        self,
        client: CompletionClient,
        credential: str,
        history: Optional[QueryHistory] = None,
        metrics: Optional[MetricsTracker] = None,
        dispatcher: Optional[Dispatcher] = None,
    ) -> None:
        self._client = client
        self._credential = credential
        self._history = history if history is not None else QueryHistory()
        self._metrics = metrics if metrics is not None else MetricsTracker()
        self._dispatch = dispatcher if dispatcher is not None else _spawn_worker
        self._lock = self._history.lock
        self._state: SessionState = Idle()
        self._sequence = 0
        self._state_listeners: List[StateListener] = []
        self._completion_listeners: List[CompletionListener] = []

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def add_state_listener(self, listener: StateListener) -> None:
        with self._lock:
            self._state_listeners.append(listener)

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Register a callback fired after every attempt, superseded ones included."""

        with self._lock:
            self._completion_listeners.append(listener)

    def submit(self, raw_text: str) -> Optional[threading.Event]:
        """Ask ``raw_text`` and return an event set once the attempt completes.

        Blank input is ignored and ``None`` is returned.
        """

        try:
            query = InputSanitiser.sanitise(raw_text)
        except EmptyQueryError:
            LOGGER.debug("Ignoring blank submission")
            return None

        with self._lock:
            self._sequence += 1
            ticket = self._sequence
            self._replace_state(Pending(query))

        LOGGER.info("Dispatching query #%d", ticket)
        done = threading.Event()
        self._dispatch(lambda: self._run_request(ticket, query, done))
        return done

    def clear_result(self) -> None:
        with self._lock:
            if isinstance(self._state, (Succeeded, Failed)):
                self._replace_state(Idle())

    def history_entries(self) -> List[str]:
        return self._history.entries()

    def select_history(self, query: str) -> str:
        return self._history.select(query)

    def clear_history(self) -> None:
        LOGGER.info("Clearing query history")
        self._history.clear()

    def metrics_snapshot(self) -> Dict[str, Any]:
        return self._metrics.snapshot()

    def shutdown(self) -> None:
        LOGGER.info("Shutting down query session")
        self._client.close()

    def _run_request(self, ticket: int, query: str, done: threading.Event) -> None:
        try:
            outcome = self._call_client(query)
            with self._lock:
                if ticket != self._sequence:
                    self._metrics.record_discarded()
                    LOGGER.info("Discarding response for superseded query #%d", ticket)
                    return
                self._replace_state(outcome)
                if isinstance(outcome, Succeeded):
                    self._history.insert(query)
        finally:
            try:
                self._notify_completion()
            finally:
                done.set()

    def _call_client(self, query: str) -> SessionState:
        start = time.perf_counter()
        try:
            content = self._client.request(query, self._credential)
        except CompletionError as exc:
            self._metrics.record_failure(exc.kind)
            LOGGER.error(
                "Query failed (%s): %s%s",
                exc.kind.value,
                exc,
                f" | detail: {exc.detail}" if exc.detail else "",
            )
            return Failed(query, exc.kind, exc.status_code)

        duration = time.perf_counter() - start
        self._metrics.record_success(duration)
        LOGGER.debug("Received response in %.2fs", duration)
        return Succeeded(query, content)

    def _replace_state(self, state: SessionState) -> None:
        self._state = state
        for listener in list(self._state_listeners):
            listener(state)

    def _notify_completion(self) -> None:
        with self._lock:
            listeners = list(self._completion_listeners)
        for listener in listeners:
            listener()


__all__ = [
    "AppConfig",
    "AppPaths",
    "CompletionClient",
    "CompletionError",
    "ConfigurationError",
    "EmptyQueryError",
    "ErrorKind",
    "Failed",
    "GENERIC_FAILURE_MESSAGE",
    "Idle",
    "InputSanitiser",
    "MalformedResponseError",
    "MetricsTracker",
    "MissingCredentialError",
    "NetworkUnavailableError",
    "Pending",
    "QueryHistory",
    "QuerySession",
    "SessionState",
    "Succeeded",
    "TransportError",
    "configure_logging",
    "describe_state",
]
