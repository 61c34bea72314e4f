"""
hkscribe.transcribe.client - Remote transcription backend using google-genai.

Defines the narrow interface the worker talks to (streamed transcription,
upload, upload status) and the Gemini implementation of it. SDK failures
are translated into hkscribe exceptions at this boundary.
"""

from __future__ import annotations

import io
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from enum import Enum

import httpx
from google import genai
from google.genai import errors, types
from pydantic import BaseModel, ConfigDict

from hkscribe.exceptions import ConfigurationError, TransportError

MAX_OUTPUT_TOKENS = 8192

# Colloquial speech is often cut off by the default filters
SAFETY_SETTINGS = [
    types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
    for category in (
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
]


class UploadState(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class UploadHandle(BaseModel):
    """A file stored on the service side, referenced by name and URI."""

    model_config = ConfigDict(frozen=True)

    name: str
    uri: str
    mime_type: str
    state: UploadState = UploadState.PROCESSING


class Payload(BaseModel):
    """Media sent with a transcription request, either inline or as an upload."""

    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: bytes | None = None
    upload: UploadHandle | None = None


class TranscriptionBackend(ABC):
    """Interface to a remote streaming transcription service."""

    @abstractmethod
    def stream_transcribe(
        self,
        payload: Payload,
        prompt: str,
        model_id: str,
        system_instruction: str | None = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments that concatenate into the transcript."""

    @abstractmethod
    async def upload(self, data: bytes, mime_type: str) -> UploadHandle:
        """Upload media too large to send inline."""

    @abstractmethod
    async def poll_status(self, handle: UploadHandle) -> UploadState:
        """Return the current processing state of an upload."""


class GeminiBackend(TranscriptionBackend):
    """Gemini implementation using the async google-genai client."""

    def __init__(self, api_key: str | None, max_output_tokens: int = MAX_OUTPUT_TOKENS) -> None:
        if not api_key:
            raise ConfigurationError(
                "Gemini API key not set. Add api_key to hkscribe.yaml or set GEMINI_API_KEY."
            )
        self.max_output_tokens = max_output_tokens
        self._client = genai.Client(api_key=api_key)

    async def stream_transcribe(
        self,
        payload: Payload,
        prompt: str,
        model_id: str,
        system_instruction: str | None = None,
    ) -> AsyncIterator[str]:
        contents = [
            types.Content(
                role="user",
                parts=[_media_part(payload), types.Part.from_text(text=prompt)],
            )
        ]
        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            max_output_tokens=self.max_output_tokens,
            safety_settings=SAFETY_SETTINGS,
        )
        with _translate_errors():
            stream = await self._client.aio.models.generate_content_stream(
                model=model_id,
                contents=contents,
                config=config,
            )
            async for chunk in stream:
                if chunk.text:
                    yield chunk.text

    async def upload(self, data: bytes, mime_type: str) -> UploadHandle:
        with _translate_errors():
            uploaded = await self._client.aio.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(mime_type=mime_type),
            )
        return UploadHandle(
            name=uploaded.name or "",
            uri=uploaded.uri or "",
            mime_type=mime_type,
            state=_upload_state(uploaded.state),
        )

    async def poll_status(self, handle: UploadHandle) -> UploadState:
        with _translate_errors():
            current = await self._client.aio.files.get(name=handle.name)
        return _upload_state(current.state)


def _media_part(payload: Payload) -> types.Part:
    if payload.upload is not None:
        return types.Part.from_uri(file_uri=payload.upload.uri, mime_type=payload.mime_type)
    return types.Part.from_bytes(data=payload.data or b"", mime_type=payload.mime_type)


def _upload_state(state: types.FileState | None) -> UploadState:
    if state == types.FileState.PROCESSING:
        return UploadState.PROCESSING
    if state == types.FileState.FAILED:
        return UploadState.FAILED
    return UploadState.READY


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map SDK and network failures onto hkscribe exceptions."""
    try:
        yield
    except errors.APIError as e:
        if e.code in (401, 403):
            raise ConfigurationError(f"Gemini rejected the API key ({e.code}): {e.message}") from e
        raise TransportError(f"Gemini request failed ({e.code}): {e.message}", e.code) from e
    except httpx.HTTPError as e:
        raise TransportError(f"Connection to Gemini failed: {e}") from e
