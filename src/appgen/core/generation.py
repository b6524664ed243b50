"""Code-generation collaborator: description (and screenshot) in, raw text out."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from appgen.core.decoder import REQUIRED_FILES
from appgen.core.errors import GenerationFailed

PROMPT_TEMPLATE = """Generate a Next.js (App Router, TypeScript, Tailwind CSS) application:
{description}

Return ONLY a JSON object mapping file paths to file contents. It must include
{required}. Use 'use client' in page components that need state.
No explanations outside the JSON object."""

IMAGE_INSTRUCTION = "Reproduce the attached screenshot as closely as possible."


@dataclass(slots=True)
class GenerationRequest:
    """One call to the generator."""

    prompt: str
    model: str
    api_key: str
    image: bytes | None = None
    image_mime_type: str | None = None


class CodeGenerator(Protocol):
    """Anything that turns a request into raw model text."""

    async def generate(self, request: GenerationRequest) -> str:
        """Return raw output or raise GenerationFailed."""


def build_prompt(description: str | None, *, has_image: bool) -> str:
    parts = [part for part in ((description or "").strip(), IMAGE_INSTRUCTION if has_image else "") if part]
    return PROMPT_TEMPLATE.format(
        description="\n".join(parts),
        required=" and ".join(f'"{name}"' for name in REQUIRED_FILES),
    )


class GeminiCodeGenerator:
    """Google Generative Language REST client.

    The API key travels in a header so it never appears in URLs, exception
    messages or logs.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def endpoint(self, model: str) -> str:
        return f"{self._base_url}/v1beta/models/{model.removeprefix('models/')}:generateContent"

    async def generate(self, request: GenerationRequest) -> str:
        parts: list[dict[str, Any]] = [{"text": request.prompt}]
        if request.image is not None:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": request.image_mime_type or "image/png",
                        "data": base64.b64encode(request.image).decode("ascii"),
                    }
                }
            )
        body = {"contents": [{"role": "user", "parts": parts}]}

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self.endpoint(request.model),
                    json=body,
                    headers={"x-goog-api-key": request.api_key},
                )
        except httpx.TimeoutException as exc:
            msg = f"Code generation timed out after {self._timeout_seconds:.0f}s"
            raise GenerationFailed(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Code generation request failed: {exc.__class__.__name__}: {exc}"
            raise GenerationFailed(msg) from exc

        if response.status_code >= 400:
            msg = (
                f"Code generation failed with HTTP {response.status_code}: "
                f"{self._error_message(response)}"
            )
            raise GenerationFailed(msg)

        try:
            payload = response.json()
        except ValueError as exc:
            msg = "Code generation returned a non-JSON response"
            raise GenerationFailed(msg) from exc
        text = self._extract_text(payload)
        if not text.strip():
            msg = "Code generation returned empty output"
            raise GenerationFailed(msg)
        return text

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:300] or response.reason_phrase
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        return response.reason_phrase

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if not isinstance(payload, dict):
            msg = "Code generation returned an unexpected payload"
            raise GenerationFailed(msg)
        candidates = payload.get("candidates") or []
        if not candidates:
            feedback = payload.get("promptFeedback") or {}
            reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            msg = f"Code generation returned no candidates (block reason: {reason or 'unknown'})"
            raise GenerationFailed(msg)
        first = candidates[0] if isinstance(candidates, list) and isinstance(candidates[0], dict) else {}
        content = first.get("content") if isinstance(first.get("content"), dict) else {}
        texts = [part.get("text", "") for part in content.get("parts") or [] if isinstance(part, dict)]
        return "".join(text for text in texts if isinstance(text, str))
