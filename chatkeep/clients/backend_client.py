# chatkeep/clients/backend_client.py
#
# Single integration layer for the gateway in front of the generative backend.
# Endpoints used:
#   POST /api/chat          {input, history, directives?, context?} -> {reply}
#   POST /summarize-text    {text, purpose?, description?}          -> {summary}
#   POST /generate-image    {prompt, size}                          -> {image_b64}
# Every failure is raised as CollaboratorFailure; callers decide whether it is fatal.

import random
import time
from typing import Any, Dict, List, Optional

import requests

from chatkeep.config.settings import Settings, load_settings
from chatkeep.memory.errors import CollaboratorFailure
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)

CHAT_PATH = "/api/chat"
SUMMARIZE_PATH = "/summarize-text"
GENERATE_IMAGE_PATH = "/generate-image"

DEFAULT_IMAGE_SIZE = "1024x1024"


def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"


def _is_transient_status(code: int) -> bool:
    return code in {408, 409, 425, 429, 500, 502, 503, 504}


def _sleep_backoff(attempt_idx: int) -> None:
    base = 0.4 * (2 ** max(0, attempt_idx - 1))
    jitter = random.uniform(0.0, 0.25)
    time.sleep(min(3.0, base + jitter))


def _error_detail(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for k in ("detail", "error", "message"):
            if body.get(k):
                return str(body[k])
    return fallback


class BackendClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.api_base = self.settings.api_base.rstrip("/")
        self.timeout = self.settings.http_timeout_seconds
        self.max_attempts = 1 + max(0, self.settings.http_max_retries)

        self.http = session or requests.Session()
        self.http.headers.update({"User-Agent": "chatkeep/client (requests)"})

    # ---------- transport ----------

    def _post_json(self, path: str, payload: Dict[str, Any], req_id: str) -> Dict[str, Any]:
        """
        POST with bounded retries on transient statuses and network errors.
        Returns the decoded JSON object or raises CollaboratorFailure.
        """
        url = f"{self.api_base}{path}"
        last_error = "no attempt made"
        last_status = 0

        for attempt in range(1, self.max_attempts + 1):
            t0 = time.monotonic()
            try:
                resp = self.http.post(url, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                last_error = f"network error: {e}"
                logger.warning("[%s] POST %s attempt=%d failed: %s", req_id, path, attempt, e)
                if attempt < self.max_attempts:
                    _sleep_backoff(attempt)
                    continue
                break

            latency_ms = int((time.monotonic() - t0) * 1000)
            try:
                body = resp.json()
            except ValueError:
                body = None

            if resp.ok and isinstance(body, dict):
                logger.info("[%s] POST %s OK status=%d latency_ms=%d", req_id, path, resp.status_code, latency_ms)
                return body

            last_status = resp.status_code
            if resp.ok:
                last_error = "response was not a JSON object"
            else:
                last_error = _error_detail(body, f"HTTP {resp.status_code}")
            logger.warning(
                "[%s] POST %s attempt=%d status=%d error=%s",
                req_id, path, attempt, resp.status_code, last_error,
            )
            if attempt < self.max_attempts and _is_transient_status(resp.status_code):
                _sleep_backoff(attempt)
                continue
            break

        raise CollaboratorFailure(f"{path} failed: {last_error}", status_code=last_status)

    # ---------- collaborators ----------

    def chat(
        self,
        input_text: str,
        history: List[Dict[str, str]],
        context: Optional[Dict[str, Any]] = None,
        directives: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = {"input": input_text, "history": history}
        if directives:
            payload["directives"] = directives
        if context is not None:
            payload["context"] = context

        body = self._post_json(CHAT_PATH, payload, _mk_req_id("chat"))
        reply = body.get("reply")
        if not isinstance(reply, str) or not reply.strip():
            raise CollaboratorFailure(_error_detail(body, "chat returned no reply"))
        return reply

    def summarize(self, text: str, purpose: Optional[str] = None, description: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"text": text}
        if purpose:
            payload["purpose"] = purpose
        if description:
            payload["description"] = description

        body = self._post_json(SUMMARIZE_PATH, payload, _mk_req_id("sum"))
        summary = body.get("summary")
        if not isinstance(summary, str):
            raise CollaboratorFailure("summarize returned no summary")
        return summary

    def generate_image(self, prompt: str, size: str = DEFAULT_IMAGE_SIZE) -> str:
        """Returns the base64 PNG payload."""
        body = self._post_json(GENERATE_IMAGE_PATH, {"prompt": prompt, "size": size}, _mk_req_id("img"))
        image_b64 = body.get("image_b64")
        if not isinstance(image_b64, str) or not image_b64:
            raise CollaboratorFailure(_error_detail(body, "generation returned no image"))
        return image_b64
