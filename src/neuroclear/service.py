# src/neuroclear/service.py
"""Classification service contract and the Gemini adapter.

The engine only depends on the two protocols below. GeminiService
implements both on top of google-generativeai; the SDK is blocking, so
calls run in a worker thread via asyncio.to_thread.

Every failure at this boundary leaves as ConfigurationError,
ClassificationFailure or EnrichmentFailure.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Sequence
from typing import Any, Protocol

import structlog

from neuroclear.config import ServiceConfig
from neuroclear.errors import ClassificationFailure, ConfigurationError, EnrichmentFailure
from neuroclear.models import (
    Category,
    ClassificationRequest,
    ClassificationResult,
    RiskLevel,
    ScanMode,
)

log = structlog.get_logger()

REQUIRED_KEYS = ("name", "description", "category", "safeToKill", "riskLevel")

_FENCE_RE = re.compile(r"```(?:json)?\n?|\n?```")

SYSTEM_INSTRUCTION = """
You are an Expert Windows Systems Architect.
Analyze the provided list of running processes.
Identify which are critical system components (Kernel, Drivers) and which are
user-space applications or potential bloatware.
Determine if they are safe to terminate to free up RAM.

CRITICAL RULES:
1. 'svchost.exe', 'System', 'Registry', 'smss.exe', 'csrss.exe', 'wininit.exe',
   'services.exe', 'lsass.exe', 'explorer.exe' are ALWAYS Critical/High Risk.
   NEVER safe to kill.
2. Common browsers (chrome, firefox) are 'User' apps, safe to kill but will lose data.
3. Look for updaters (AdobeUpdater, JavaUpdate) as 'Bloatware'/'Background'.

Return a JSON array. Each element has the keys:
  ref (string, copied unchanged from the input entry),
  name (string), description (string),
  category (one of "System", "User", "Background", "Bloatware", "Unknown"),
  safeToKill (boolean),
  riskLevel (one of "Low", "Medium", "High", "Critical"),
  reasoning (string).
"""

DEEP_ADDENDUM = """
Take your time. For every process you are unsure about, reason about its
publisher, typical install location and what breaks if it is terminated
before deciding. Prefer a higher risk level when evidence is thin.
"""

LOOKUP_PROMPT = 'What is the Windows process "{name}"? Is it safe to disable? Be concise.'


class ClassificationService(Protocol):
    """Batch classification contract."""

    async def classify(
        self, batch: Sequence[ClassificationRequest], mode: ScanMode
    ) -> list[ClassificationResult]:
        """Classify a batch.

        Raises:
            ConfigurationError: No credentials; raised before any request.
            ClassificationFailure: Transport error or unusable payload.
        """
        ...


class LookupService(Protocol):
    """Single-record enrichment lookup contract."""

    async def lookup(self, name: str) -> str:
        """Return descriptive text for a process name.

        Raises:
            EnrichmentFailure: The lookup could not be completed.
        """
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Payload handling
# ─────────────────────────────────────────────────────────────────────────────


def clean_json_string(text: str) -> str:
    """Strip markdown code fences a model may wrap JSON in."""
    return _FENCE_RE.sub("", text).strip()


def build_prompt(batch: Sequence[ClassificationRequest]) -> str:
    """Render the batch as the user prompt."""
    entries = [{"ref": r.ref, "name": r.name, "memory": r.memory_summary} for r in batch]
    return f"Analyze these processes: {json.dumps(entries)}"


def _parse_entry(index: int, item: Any) -> ClassificationResult:
    if not isinstance(item, dict):
        raise ClassificationFailure(f"Entry {index} is not an object")

    missing = [k for k in REQUIRED_KEYS if k not in item]
    if missing:
        raise ClassificationFailure(f"Entry {index} missing keys: {missing}")

    name = item["name"]
    if not isinstance(name, str) or not name:
        raise ClassificationFailure(f"Entry {index} has invalid name: {name!r}")

    description = item["description"]
    if not isinstance(description, str):
        raise ClassificationFailure(f"Entry {index} has invalid description")

    safe_to_kill = item["safeToKill"]
    if not isinstance(safe_to_kill, bool):
        raise ClassificationFailure(f"Entry {index} safeToKill is not a boolean: {safe_to_kill!r}")

    try:
        category = Category(item["category"])
    except ValueError:
        raise ClassificationFailure(
            f"Entry {index} has invalid category: {item['category']!r}"
        ) from None

    try:
        risk_level = RiskLevel(item["riskLevel"])
    except ValueError:
        raise ClassificationFailure(
            f"Entry {index} has invalid riskLevel: {item['riskLevel']!r}"
        ) from None

    reasoning = item.get("reasoning")
    if reasoning is not None and not isinstance(reasoning, str):
        raise ClassificationFailure(f"Entry {index} has invalid reasoning")

    ref = item.get("ref")
    if ref is not None and not isinstance(ref, str):
        ref = None

    return ClassificationResult(
        name=name,
        category=category,
        safe_to_kill=safe_to_kill,
        risk_level=risk_level,
        description=description,
        reasoning=reasoning,
        ref=ref,
    )


def parse_classifications(text: str | None) -> list[ClassificationResult]:
    """Parse and validate a classification response body.

    The whole payload is rejected if any entry is malformed, so a caller
    never sees a partially valid response.

    Raises:
        ClassificationFailure: Empty, non-JSON or non-conforming payload.
    """
    if not text or not text.strip():
        raise ClassificationFailure("Empty response")

    try:
        data = json.loads(clean_json_string(text))
    except json.JSONDecodeError as e:
        raise ClassificationFailure(f"Response is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise ClassificationFailure(f"Expected a JSON array, got {type(data).__name__}")
    if not data:
        raise ClassificationFailure("Empty response")

    return [_parse_entry(i, item) for i, item in enumerate(data)]


def extract_sources(response: Any, limit: int) -> list[str]:
    """Pull web source URIs out of a grounded response, if any."""
    if limit <= 0:
        return []
    try:
        candidate = response.candidates[0]
    except (AttributeError, IndexError, TypeError):
        return []
    metadata = getattr(candidate, "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    uris = []
    for chunk in chunks:
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None)
        if uri:
            uris.append(uri)
        if len(uris) >= limit:
            break
    return uris


def format_lookup_text(text: str, sources: Sequence[str]) -> str:
    """Append source links under a ``Sources:`` heading."""
    if not sources:
        return text
    return text + "\n\nSources:\n" + "\n".join(sources)


# ─────────────────────────────────────────────────────────────────────────────
# Gemini adapter
# ─────────────────────────────────────────────────────────────────────────────


class GeminiService:
    """Classification and lookup backed by Google Gemini."""

    def __init__(self, config: ServiceConfig, api_key: str | None = None) -> None:
        self.config = config
        self._api_key = api_key or config.resolve_api_key()
        self._configured = False

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    def _ensure_configured(self) -> Any:
        """Configure the SDK once and return the module.

        Raises:
            ConfigurationError: No API key; nothing has been sent.
        """
        if not self._api_key:
            raise ConfigurationError(
                f"No API key found. Set {self.config.api_key_env} "
                f"(or {self.config.fallback_api_key_env})."
            )

        import google.generativeai as genai

        if not self._configured:
            genai.configure(api_key=self._api_key)
            self._configured = True
        return genai

    def _model_for(self, mode: ScanMode) -> str:
        if mode is ScanMode.DEEP:
            return self.config.deep_model
        return self.config.quick_model

    async def classify(
        self, batch: Sequence[ClassificationRequest], mode: ScanMode
    ) -> list[ClassificationResult]:
        genai = self._ensure_configured()

        instruction = SYSTEM_INSTRUCTION
        if mode is ScanMode.DEEP:
            instruction += DEEP_ADDENDUM

        model_name = self._model_for(mode)
        model = genai.GenerativeModel(
            model_name,
            system_instruction=instruction,
            generation_config=genai.GenerationConfig(response_mime_type="application/json"),
        )
        prompt = build_prompt(batch)

        log.info("classify_request", model=model_name, mode=mode.value, count=len(batch))
        try:
            response = await asyncio.to_thread(
                model.generate_content,
                prompt,
                request_options={"timeout": self.config.request_timeout},
            )
            text = response.text
        except Exception as e:
            log.warning("classify_transport_error", model=model_name, error=str(e))
            raise ClassificationFailure(f"{type(e).__name__}: {e}") from e

        return parse_classifications(text)

    async def lookup(self, name: str) -> str:
        try:
            genai = self._ensure_configured()
        except ConfigurationError as e:
            raise EnrichmentFailure(str(e)) from e

        prompt = LOOKUP_PROMPT.format(name=name)
        model = genai.GenerativeModel(self.config.lookup_model)

        try:
            response = await asyncio.to_thread(
                model.generate_content,
                prompt,
                tools="google_search_retrieval",
                request_options={"timeout": self.config.request_timeout},
            )
        except Exception as e:
            # Search grounding is not offered for every model; ask without it
            log.info("lookup_grounding_unavailable", name=name, error=str(e))
            try:
                response = await asyncio.to_thread(
                    model.generate_content,
                    prompt,
                    request_options={"timeout": self.config.request_timeout},
                )
            except Exception as retry_error:
                raise EnrichmentFailure(
                    f"{type(retry_error).__name__}: {retry_error}"
                ) from retry_error

        try:
            text = response.text
        except Exception as e:
            raise EnrichmentFailure(f"Unreadable response: {e}") from e

        text = text.strip() if text else ""
        if not text:
            text = "No information found."
        return format_lookup_text(text, extract_sources(response, self.config.max_sources))
