from __future__ import annotations

import logging
import pathlib
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict

from framefarm.services.generation.retry import retry_call

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 1950

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"

# (poll interval seconds, max wait seconds) per artifact kind
POLL_PROFILES: Dict[str, tuple] = {
    "video": (15, 15 * 60),
    "image": (5, 5 * 60),
}


class GenerationError(RuntimeError):
    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class GenerationTimeout(GenerationError):
    """The remote job did not complete within the allowed wait."""


def redact_debug(text: str) -> str:
    """Returns a redacted, safe-to-log representation of a string."""
    return f"<redacted len={len(text)}>"


class BaseGenerationProvider(ABC):
    """
    Base class for remote image/video generators.

    Subclasses implement the four queue primitives; generate() chains them,
    retrying each primitive on transient errors.
    """

    max_attempts = 3

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self.sleep = sleep

    @property
    @abstractmethod
    def name(self) -> str:
        """The unique name of the provider."""
        raise NotImplementedError

    @property
    @abstractmethod
    def default_model(self) -> str:
        """The default model used by the provider."""
        raise NotImplementedError

    @abstractmethod
    def submit(self, prompt: str, params: Dict[str, Any]) -> str:
        """Queues a generation request and returns its request id."""
        raise NotImplementedError

    @abstractmethod
    def poll_status(self, request_id: str) -> str:
        """Returns one of pending, in_progress, completed, failed."""
        raise NotImplementedError

    @abstractmethod
    def fetch_result(self, request_id: str) -> str:
        """Returns the artifact URL of a completed request."""
        raise NotImplementedError

    @abstractmethod
    def download(self, url: str, output_path: pathlib.Path) -> None:
        raise NotImplementedError

    def forget(self, request_id: str) -> None:
        """Drops any per-request state kept between the queue primitives."""

    def _retry(self, fn: Callable[[], Any], label: str) -> Any:
        return retry_call(fn, max_attempts=self.max_attempts, label=f"{self.name} {label}", sleep=self.sleep)

    def generate(self, prompt: str, params: Dict[str, Any], output_path: pathlib.Path) -> Dict[str, Any]:
        """
        Runs one generation end to end and writes the artifact to output_path.

        Returns an opaque result dict suitable for the job's metadata file.
        Raises GenerationError (or the last transient error once retries are
        exhausted).
        """
        if not prompt or not prompt.strip():
            raise GenerationError("empty prompt")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise GenerationError(f"prompt too long ({len(prompt)} > {MAX_PROMPT_LENGTH})")

        kind = params.get("kind", "video")
        interval_s, max_wait_s = POLL_PROFILES.get(kind, POLL_PROFILES["video"])
        interval_s = params.get("poll_interval_s", interval_s)
        max_wait_s = params.get("max_wait_s", max_wait_s)

        request_id = self._retry(lambda: self.submit(prompt, params), "submit")
        logger.info(f"{self.name}: submitted {kind} request {request_id}")

        try:
            waited = 0.0
            while True:
                status = self._retry(lambda: self.poll_status(request_id), "status")
                if status == COMPLETED:
                    break
                if status == FAILED:
                    raise GenerationError(f"{self.name} request {request_id} failed")
                if waited >= max_wait_s:
                    raise GenerationTimeout(f"{self.name} request {request_id} not done after {max_wait_s}s")
                self.sleep(interval_s)
                waited += interval_s

            url = self._retry(lambda: self.fetch_result(request_id), "result")
            self._retry(lambda: self.download(url, output_path), "download")
        finally:
            self.forget(request_id)
        logger.info(f"{self.name}: wrote {output_path.name}")
        return {
            "provider": self.name,
            "requestId": request_id,
            "url": url,
            "output": output_path.name,
            "prompt": prompt,
        }
