from __future__ import annotations

import json
import logging
import re
import threading
import time
from typing import Callable, Optional, Sequence
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from config import get_settings
from errors import TRANSPORT_ERRORS, ErrorKind, Outcome, get_error_message

logger = logging.getLogger(__name__)

BASE_URL = "https://generativelanguage.googleapis.com"
API_VERSIONS = ("v1", "v1beta")
DEFAULT_MODEL = "gemini-1.5-flash"

_FENCE_OPEN = re.compile(r"```(?:json)?\n?", re.IGNORECASE)
_ARRAY_SPAN = re.compile(r"\[[\s\S]*\]")


class ModelCache:
    """Holds the last model listing for ``ttl_secs``; the clock is injectable."""

    def __init__(
        self, ttl_secs: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_secs = ttl_secs
        self.clock = clock
        self._entry: Optional[tuple[float, str, list[dict]]] = None
        self._lock = threading.Lock()

    def get(self) -> Optional[tuple[str, list[dict]]]:
        with self._lock:
            if self._entry is None:
                return None
            stored_at, api_version, models = self._entry
            if self.clock() - stored_at >= self.ttl_secs:
                self._entry = None
                return None
            return api_version, models

    def set(self, api_version: str, models: list[dict]) -> None:
        with self._lock:
            self._entry = (self.clock(), api_version, list(models))

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None


def strip_code_fences(text: str) -> str:
    return _FENCE_OPEN.sub("", str(text)).replace("```", "").strip()


def get_response_text(payload: dict) -> str:
    try:
        parts = payload["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""
    texts = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text")]
    return "\n".join(texts)


def extract_json_array(text: str) -> Optional[str]:
    match = _ARRAY_SPAN.search(text)
    return match.group(0) if match else None


def _model_rank(model_id: str) -> int:
    lowered = model_id.lower()
    if "flash" in lowered:
        return 1
    if "pro" in lowered:
        return 2
    return 3


def _post_json(url: str, body: dict, timeout: float) -> dict:
    req = Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8"))


def _get_json(url: str, timeout: float) -> dict:
    req = Request(url, headers={"Accept": "application/json"})
    with urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8"))


def _describe_http_error(exc: Exception, api_version: str) -> str:
    if isinstance(exc, HTTPError):
        try:
            detail = exc.read().decode("utf-8", "replace")
        except Exception:
            detail = ""
        return f"Gemini request failed ({api_version}): {exc.code} {exc.reason} {detail}".strip()
    return f"Gemini request failed ({api_version}): {get_error_message(exc, type(exc).__name__)}"


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        model_cache: Optional[ModelCache] = None,
        api_versions: Sequence[str] = API_VERSIONS,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model if model is not None else settings.gemini_model
        self.timeout = timeout if timeout is not None else settings.gemini_timeout_secs
        self.model_cache = model_cache or ModelCache(settings.model_cache_ttl_secs)
        self.api_versions = tuple(api_versions)

    def list_models(self) -> Outcome[tuple[str, list[dict]]]:
        cached = self.model_cache.get()
        if cached is not None:
            return Outcome.success(cached)
        last_error = "Unable to list Gemini models"
        for version in self.api_versions:
            url = f"{BASE_URL}/{version}/models?key={self.api_key}"
            try:
                payload = _get_json(url, self.timeout)
            except TRANSPORT_ERRORS as exc:
                last_error = _describe_http_error(exc, version)
                continue
            models = payload.get("models") if isinstance(payload, dict) else None
            models = models if isinstance(models, list) else []
            self.model_cache.set(version, models)
            return Outcome.success((version, models))
        return Outcome.failure(ErrorKind.transient, last_error)

    def resolve_model(self) -> Outcome[str]:
        if self.model:
            return Outcome.success(self.model)
        listed = self.list_models()
        if not listed.ok:
            return Outcome.failure(listed.error_kind, listed.error)
        _, models = listed.value
        ids = [
            str(m.get("name", "")).removeprefix("models/")
            for m in models
            if "generateContent" in (m.get("supportedGenerationMethods") or [])
        ]
        ids = [i for i in ids if i]
        if not ids:
            return Outcome.failure(
                ErrorKind.configuration,
                "No Gemini models available for generateContent for this API key",
            )
        return Outcome.success(sorted(ids, key=_model_rank)[0])

    def generate_content(self, prompt: str) -> Outcome[str]:
        if not self.api_key:
            return Outcome.failure(ErrorKind.configuration, "GEMINI_API_KEY is not set")
        resolved = self.resolve_model()
        model = resolved.value if resolved.ok else DEFAULT_MODEL
        body = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}

        last_error = "Gemini generateContent failed"
        for version in self.api_versions:
            url = f"{BASE_URL}/{version}/models/{model}:generateContent?key={self.api_key}"
            try:
                payload = _post_json(url, body, self.timeout)
            except TRANSPORT_ERRORS as exc:
                last_error = _describe_http_error(exc, version)
                logger.info(f"gemini: api_version={version} model={model} failed, {last_error}")
                continue
            text = get_response_text(payload)
            if not text:
                return Outcome.failure(ErrorKind.invalid_response, "Gemini returned no text")
            return Outcome.success(text)
        return Outcome.failure(ErrorKind.transient, last_error)
