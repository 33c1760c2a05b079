"""
GroupCopilot
LLM Gateway.

Provider-agnostic text-generation adapter with:
    - Gemini provider (google-genai), created lazily
    - Retry with backoff per model variant, then a fallback model chain
    - Error classification into safe, non-identifying codes
    - ``generate()`` that never raises: it returns caller-supplied fallback
      text flagged ``mock_mode`` whenever the generator is unavailable

Usage:
    from groupcopilot.ai.gateway import LLMGateway
    gw = LLMGateway.from_config(app.config)
    result = gw.generate(messages, fallback="Welcome!", purpose="kickoff")
    result.text, result.mock_mode
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ── Error classification ─────────────────────────────────────────────────────

MISSING_KEY = "MISSING_KEY"
MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
AUTH_ERROR = "AUTH_ERROR"
NETWORK_ERROR = "NETWORK_ERROR"
EMPTY_RESPONSE = "EMPTY_RESPONSE"
BLOCKED_RESPONSE = "BLOCKED_RESPONSE"
SDK_ERROR = "SDK_ERROR"

_SAFE_MESSAGES = {
    MISSING_KEY: "Text generation is disabled (no API key configured).",
    MODEL_NOT_FOUND: "Model not found. Check the GEMINI_MODEL setting.",
    QUOTA_EXCEEDED: "API quota exceeded. Try again later.",
    AUTH_ERROR: "API key rejected. Check the GEMINI_API_KEY value.",
    NETWORK_ERROR: "Network error reaching the generation API.",
    EMPTY_RESPONSE: "The model returned an empty response.",
    BLOCKED_RESPONSE: "The model declined to answer this prompt.",
    SDK_ERROR: "Unexpected SDK error. Check server logs.",
}

# Failing again with the same model won't help for these
_NON_RETRYABLE = frozenset({MODEL_NOT_FOUND, AUTH_ERROR, BLOCKED_RESPONSE})


class GenerationError(Exception):
    """A classified generation failure. ``str()`` is always the safe message."""

    def __init__(self, error_type: str, detail: str | None = None) -> None:
        self.error_type = error_type
        self.detail = detail
        super().__init__(_SAFE_MESSAGES.get(error_type, _SAFE_MESSAGES[SDK_ERROR]))


def classify_generation_error(error) -> tuple[str, str]:
    """
    Map a provider exception to ``(error_type, safe_message)``.

    Order matters: "model ... not found (404)" must classify as
    MODEL_NOT_FOUND before the generic status-code checks run.
    The safe message never echoes the raw error text.
    """
    if isinstance(error, GenerationError):
        return error.error_type, str(error)

    lower = str(error).lower()
    if "not found" in lower or "404" in lower or "model" in lower:
        error_type = MODEL_NOT_FOUND
    elif "quota" in lower or "429" in lower or "resource_exhausted" in lower:
        error_type = QUOTA_EXCEEDED
    elif ("api_key" in lower or "401" in lower or "403" in lower
          or "permission" in lower or "invalid key" in lower):
        error_type = AUTH_ERROR
    elif ("network" in lower or "enotfound" in lower or "fetch failed" in lower
          or "timeout" in lower or "timed out" in lower or "connection" in lower):
        error_type = NETWORK_ERROR
    else:
        error_type = SDK_ERROR
    return error_type, _SAFE_MESSAGES[error_type]


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class GenerationResult:
    """Outcome of ``LLMGateway.generate``.

    Attributes:
        text:               Model text, or the caller's fallback.
        mock_mode:          True when ``text`` is the fallback.
        error_type:         Classification when the generator failed, else None.
        error_message_safe: Sanitized message for the classification.
        model:              Model that produced ``text`` (None in mock mode).
    """

    text: str
    mock_mode: bool
    error_type: str | None = None
    error_message_safe: str | None = None
    model: str | None = None


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for text-generation providers."""

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, etc.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model

        Raises:
            GenerationError for classified failures; any other exception
            is classified by the gateway.
        """
        ...


# ── Gemini Provider ───────────────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Models:
        - gemini-2.5-flash  (default)
        - gemini-2.0-flash  (fallback)

    Environment:
        GEMINI_API_KEY — obtain at https://aistudio.google.com/apikey
    """

    def __init__(self, api_key: str, timeout_seconds: float = 30):
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai
            from google.genai import types

            self._client = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(timeout=int(self.timeout_seconds * 1000)),
            )
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

        # Separate system instruction from conversation messages
        system_parts = []
        contents = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                # Gemini uses "user" and "model" roles
                role = "model" if m["role"] == "assistant" else "user"
                contents.append(
                    types.Content(role=role, parts=[types.Part(text=m["content"])])
                )

        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", 0.4),
            max_output_tokens=kwargs.get("max_tokens", 2048),
        )
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(
            model=model,
            contents=contents,
            config=config,
        )

        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise GenerationError(BLOCKED_RESPONSE, str(feedback.block_reason))

        text = (response.text or "").strip()
        if not text:
            raise GenerationError(EMPTY_RESPONSE)

        usage = getattr(response, "usage_metadata", None)
        return {
            "content": text,
            "prompt_tokens": getattr(usage, "prompt_token_count", 0) or 0,
            "completion_tokens": getattr(usage, "candidates_token_count", 0) or 0,
            "model": model,
        }


# ── Gateway ──────────────────────────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all generation calls.

    Construct once per app (see ``create_app``) and pass to the services that
    need it; tests construct their own with a scripted provider.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        *,
        model: str = "gemini-2.5-flash",
        fallback_models: list[str] | tuple = (),
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        max_reply_chars: int = 6000,
    ):
        self.provider = provider
        self.model = model
        self.fallback_models = [m for m in fallback_models if m and m != model]
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.max_reply_chars = max_reply_chars

    @classmethod
    def from_config(cls, config) -> "LLMGateway":
        """Build from a Flask config mapping; no provider when the key is missing."""
        api_key = (config.get("GEMINI_API_KEY") or "").strip()
        provider = (
            GeminiProvider(api_key, timeout_seconds=config.get("LLM_TIMEOUT_SECONDS", 30))
            if api_key else None
        )
        return cls(
            provider,
            model=config.get("GEMINI_MODEL", "gemini-2.5-flash"),
            fallback_models=config.get("GEMINI_FALLBACK_MODELS", ()),
            max_retries=config.get("LLM_MAX_RETRIES", 2),
            backoff_seconds=config.get("LLM_RETRY_BACKOFF_SECONDS", 1.0),
            max_reply_chars=config.get("MAX_REPLY_CHARS", 6000),
        )

    @property
    def available(self) -> bool:
        return self.provider is not None

    def chat(self, messages: list | str, model: str | None = None, *, purpose: str = "", **kwargs) -> dict:
        """
        Send a chat request with retries and model fallback.

        Each model in ``[model] + fallback_models`` gets up to ``max_retries``
        attempts with linear backoff; non-retryable classifications move on to
        the next model immediately, and AUTH_ERROR stops the chain.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model, latency_ms}

        Raises:
            GenerationError with the last classification when everything failed.
        """
        if self.provider is None:
            raise GenerationError(MISSING_KEY)
        if isinstance(messages, str):
            messages = [{"role": "user", "content": messages}]

        chain = [model or self.model] + [m for m in self.fallback_models if m != (model or self.model)]
        last_error = GenerationError(SDK_ERROR)

        for current in chain:
            for attempt in range(1, self.max_retries + 1):
                start = time.perf_counter()
                try:
                    result = self.provider.chat(messages, current, **kwargs)
                    result["latency_ms"] = int((time.perf_counter() - start) * 1000)
                    logger.debug(
                        "LLM call ok purpose=%s model=%s latency=%dms",
                        purpose, current, result["latency_ms"],
                    )
                    return result
                except Exception as e:
                    error_type, _ = classify_generation_error(e)
                    last_error = e if isinstance(e, GenerationError) else GenerationError(error_type, str(e))
                    logger.warning(
                        "LLM call attempt %d/%d failed purpose=%s model=%s type=%s: %s",
                        attempt, self.max_retries, purpose, current, error_type, e,
                        extra={"error_type": error_type},
                    )
                    if error_type in _NON_RETRYABLE:
                        break
                    if attempt < self.max_retries and self.backoff_seconds:
                        time.sleep(self.backoff_seconds * attempt)

            if last_error.error_type == AUTH_ERROR:
                break
            if current != chain[-1]:
                logger.info("Trying fallback model after %s failed", current)

        raise last_error

    def generate(self, messages: list | str, fallback: str, *, purpose: str = "", **kwargs) -> GenerationResult:
        """
        Generate text, degrading to *fallback* instead of raising.

        Returns:
            GenerationResult with ``mock_mode=True`` and the classification
            whenever the fallback was used.
        """
        try:
            result = self.chat(messages, purpose=purpose, **kwargs)
        except GenerationError as e:
            if e.error_type != MISSING_KEY:
                logger.warning("Generation fell back purpose=%s type=%s detail=%s",
                               purpose, e.error_type, e.detail)
            return GenerationResult(
                text=fallback, mock_mode=True,
                error_type=e.error_type, error_message_safe=str(e),
            )

        text = result["content"][: self.max_reply_chars]
        return GenerationResult(text=text, mock_mode=False, model=result.get("model"))
