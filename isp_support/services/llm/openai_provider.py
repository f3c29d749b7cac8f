import time
from typing import List, Optional

import httpx

from isp_support.logging_config import get_logger
from isp_support.services.errors import ClassifierError
from isp_support.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")

OVERLOADED_STATUS = 503


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (chat completions + whisper)."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 60.0,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 8.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.audio_url = "https://api.openai.com/v1/audio/transcriptions"

    def _post(self, url: str, **kwargs) -> httpx.Response:
        """POST, backing off exponentially while the API reports it is overloaded."""
        delay = self.retry_backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(url, **kwargs)
            if response.status_code != OVERLOADED_STATUS or attempt == self.max_attempts:
                return response
            logger.warning(f"OpenAI overloaded (attempt {attempt}/{self.max_attempts}), retrying in {delay}s")
            time.sleep(delay)
            delay *= 2

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        response_format: Optional[dict] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI. Messages may carry image parts for vision calls."""
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            response = self._post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            raise ClassifierError(f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:300]}")
            raise ClassifierError(f"OpenAI API error: {response.status_code}")

        data = response.json()
        content = ""
        if data.get("choices"):
            content = data["choices"][0].get("message", {}).get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        model: Optional[str] = None,
        language: Optional[str] = "es",
    ) -> str:
        """Transcribe a voice note using OpenAI speech-to-text."""
        if not audio_bytes:
            raise ClassifierError("audio_bytes is empty")

        files = {"file": (filename or "audio.ogg", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": model or "whisper-1", "response_format": "text"}
        if language:
            data["language"] = language

        try:
            response = self._post(
                self.audio_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files=files,
                data=data,
            )
        except httpx.HTTPError as e:
            raise ClassifierError(f"OpenAI transcription failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text[:300]}")
            raise ClassifierError(f"OpenAI transcription error: {response.status_code}")

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript
