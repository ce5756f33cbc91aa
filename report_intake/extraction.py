"""
Candidate extraction: turn free report text into loosely-typed violation candidates.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, timeout)
  - Degradation chain: primary model -> fallback model
  - Response parsing: tolerant JSON array extraction from chat output

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini                (primary model)
  LLM_FALLBACK_MODEL    = gpt-4o                     (fallback on primary failure)
  LLM_TEMPERATURE       = 0.1
  LLM_MAX_TOKENS        = 4096
  LLM_TIMEOUT_S         = 120
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1   (Ollama OpenAI-compat endpoint)
  OLLAMA_MODEL          = qwen2.5:7b
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from report_intake.errors import ConfigurationError, ExtractionError
from report_intake.runtime_profile import env_float, env_int

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.1
    max_tokens: int = 4096
    timeout_s: float = 120.0


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""


def _get_provider_config(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("LLM_PROVIDER", "openai").strip().lower()
    fallback = env.get("LLM_FALLBACK_MODEL", "").strip()
    temperature = env_float(env, "LLM_TEMPERATURE", default=0.1)
    max_tokens = env_int(env, "LLM_MAX_TOKENS", default=4096, minimum=256)
    timeout_s = env_float(env, "LLM_TIMEOUT_S", default=120.0)

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=env.get("OLLAMA_MODEL", env.get("LLM_MODEL", "")).strip() or "qwen2.5:7b",
            fallback_model=fallback,
            api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_s=timeout_s,
        )

    return ProviderConfig(
        provider=provider,
        model=env.get("LLM_MODEL", "").strip() or "gpt-4o-mini",
        fallback_model=fallback,
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
        max_tokens=max_tokens,
        timeout_s=timeout_s,
    )


def _create_client(config: ProviderConfig):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install openai")

    kwargs: dict[str, Any] = {"timeout": config.timeout_s}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return openai.OpenAI(**kwargs)


def _call_chat(
    *,
    client,
    model: str,
    messages: list[dict[str, str]],
    temperature: float = 0.1,
    max_tokens: int = 4096,
) -> tuple[str, LLMUsage]:
    """Call chat completions and return (content, usage)."""
    t0 = time.monotonic()
    response = client.chat.completions.create(
        model=model,
        temperature=temperature,
        messages=messages,
        max_tokens=max_tokens,
    )
    elapsed_ms = (time.monotonic() - t0) * 1000

    content = response.choices[0].message.content or ""
    usage_data = response.usage
    usage = LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=model,
        latency_ms=round(elapsed_ms, 1),
    )
    return content, usage


def _call_with_degradation(
    *,
    client,
    config: ProviderConfig,
    messages: list[dict[str, str]],
) -> tuple[str, LLMUsage]:
    """Try primary model, then fallback model, raising on total failure."""
    try:
        return _call_chat(
            client=client,
            model=config.model,
            messages=messages,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    except Exception as primary_exc:
        if not config.fallback_model:
            raise

        logger.warning(
            "Primary model %s failed (%s), degrading to %s",
            config.model,
            type(primary_exc).__name__,
            config.fallback_model,
        )
        content, usage = _call_chat(
            client=client,
            model=config.fallback_model,
            messages=messages,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        usage.degraded = True
        usage.degrade_reason = f"primary_failed:{type(primary_exc).__name__}"
        return content, usage


_SYSTEM_PROMPT = """You are a human rights analyst who extracts individual violations from incident reports about Syria.
Return every violation the report describes as one item of a JSON array, using this schema:

- type: REQUIRED, one of AIRSTRIKE, CHEMICAL_ATTACK, DETENTION, DISPLACEMENT, EXECUTION, SHELLING, SIEGE, TORTURE, MURDER, SHOOTING, HOME_INVASION, EXPLOSION, AMBUSH, KIDNAPPING, LANDMINE, OTHER
- date: REQUIRED, incident date as YYYY-MM-DD
- reported_date: optional, YYYY-MM-DD
- location: REQUIRED
  - name: {"en": ..., "ar": ...}, include both languages when possible
  - administrative_division: {"en": ..., "ar": ...}
  - do not include coordinates
- description: REQUIRED, {"en": 10-2000 characters, "ar": optional}
- source, source_url, verification_method, perpetrator: optional {"en": ..., "ar": ...}
- verified: false
- certainty_level: REQUIRED, one of confirmed, probable, possible
- casualties, injured_count, kidnapped_count, displaced_count: optional non-negative integers
- victims: optional list of {"age", "gender": male|female|other|unknown, "status": civilian|combatant|unknown, "death_date"}
- perpetrator_affiliation: one of assad_regime, post_8th_december_government, various_armed_groups, isis, sdf, israel, turkey, druze_militias, russia, iran_shia_militias, international_coalition, unknown
- media_links: optional list of URLs
- tags: optional list of {"en": ..., "ar": ...}, each at most 50 characters

Rules:
- Extract only facts stated in the report; never invent details.
- Use "unknown" for perpetrator_affiliation when the report does not name one.
- Respond with the JSON array only. Respond with [] when the report describes no violations."""

_USER_PROMPT = "Parse the following report and extract all violations it mentions as a JSON array."


def describe_source(source_url: Mapping[str, Any] | None) -> str:
    if not source_url or not source_url.get("name"):
        return "No source information provided"
    text = f"Report source: {source_url['name']}"
    if source_url.get("url"):
        text += f" ({source_url['url']})"
    if source_url.get("report_date"):
        text += f" published on {source_url['report_date']}"
    return text


def build_messages(report_text: str, source_url: Mapping[str, Any] | None) -> list[dict[str, str]]:
    user_msg = f"{_USER_PROMPT}\n\nSOURCE INFO: {describe_source(source_url)}\n\nREPORT TEXT:\n{report_text}"
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": user_msg},
    ]


_FENCED_JSON = re.compile(r"```json\s*\n([\s\S]*?)\n```")
_FENCED_ANY = re.compile(r"```\s*\n([\s\S]*?)\n```")
_FENCED_INLINE = re.compile(r"```([\s\S]*?)```")
_EMBEDDED_ARRAY = re.compile(r"\[\s*\{[\s\S]*?\}\s*\]")
_OBJECT_LIKE = re.compile(r"\{[\s\S]*?\}")


def _locate_json_text(content: str) -> str | None:
    for pattern in (_FENCED_JSON, _FENCED_ANY, _FENCED_INLINE):
        match = pattern.search(content)
        if match:
            return match.group(1)

    trimmed = content.strip()
    if trimmed.startswith("[") and trimmed.endswith("]"):
        return trimmed

    match = _EMBEDDED_ARRAY.search(content)
    if match:
        return match.group(0)

    objects = _OBJECT_LIKE.findall(content)
    if objects:
        joined = f"[{','.join(objects)}]"
        try:
            json.loads(joined)
        except json.JSONDecodeError:
            return None
        return joined
    return None


def extract_candidates_json(content: str) -> list[dict[str, Any]]:
    """Pull the candidate array out of a chat response, tolerating prose and code fences."""
    json_text = _locate_json_text(content)
    if json_text is None:
        logger.error("No JSON found in extraction response; preview: %s", content[:500])
        raise ExtractionError(
            "Failed to extract structured data from the response. "
            "The model may have returned an explanation instead of JSON."
        )

    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as exc:
        logger.error("JSON parse error: %s; text: %s", exc, json_text[:200])
        raise ExtractionError(f"Failed to parse JSON from extraction response: {exc}") from exc

    if isinstance(parsed, dict):
        arrays = [value for value in parsed.values() if isinstance(value, list)]
        if arrays:
            parsed = arrays[0]
        elif parsed.get("type") and parsed.get("date"):
            parsed = [parsed]
        else:
            raise ExtractionError(
                "Failed to parse JSON from extraction response: "
                "Response is not an array and does not contain valid violation data"
            )
    elif not isinstance(parsed, list):
        raise ExtractionError("Failed to parse JSON from extraction response: Response is not an array")

    if not parsed:
        return []
    candidates = [item for item in parsed if isinstance(item, dict)]
    if not candidates:
        raise ExtractionError("Failed to parse JSON from extraction response: No valid violations found in response")
    return candidates


def _response_detail(exc: Exception) -> tuple[int | None, Any]:
    status = getattr(exc, "status_code", None)
    body = getattr(exc, "body", None)
    if body is None:
        response = getattr(exc, "response", None)
        if response is not None:
            try:
                body = response.json()
            except Exception:
                body = getattr(response, "text", None)
    return (int(status) if isinstance(status, int) else None), body


class CandidateExtractor:
    """Calls the text-understanding model and returns unvalidated candidates."""

    def __init__(
        self,
        *,
        config: ProviderConfig | None = None,
        client_factory: Callable[[ProviderConfig], Any] = _create_client,
    ) -> None:
        self._config = config
        self._client_factory = client_factory

    @property
    def config(self) -> ProviderConfig:
        return self._config or _get_provider_config()

    def extract(self, report_text: str, source_url: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        config = self.config
        if config.provider != "ollama" and not config.api_key:
            raise ConfigurationError(
                "Text extraction API key is not configured. Please check your environment variables."
            )

        logger.info("Calling extraction model %s with text length: %d characters", config.model, len(report_text))
        messages = build_messages(report_text, source_url)
        client = self._client_factory(config)
        try:
            content, usage = _call_with_degradation(client=client, config=config, messages=messages)
        except Exception as exc:
            status, body = _response_detail(exc)
            logger.error("Extraction API error (status=%s): %s", status, exc)
            raise ExtractionError(
                f"Text extraction API error: {exc}",
                response_data=body,
                retryable=status not in {400, 401, 403},
            ) from exc

        logger.info(
            "Extraction model %s answered in %.1f ms (tokens in=%d out=%d degraded=%s)",
            usage.model,
            usage.latency_ms,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.degraded,
        )
        candidates = extract_candidates_json(content)
        logger.info("Successfully parsed %d violations from report", len(candidates))
        return candidates


def create_extractor_from_env(environ: Mapping[str, str] | None = None) -> CandidateExtractor:
    if environ is None:
        return CandidateExtractor()
    return CandidateExtractor(config=_get_provider_config(environ))
