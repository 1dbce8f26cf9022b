from __future__ import annotations

from typing import Any, List

from pydantic import Field

from gemini_lb.modules.shared.schemas import DashboardModel


class GenerateRequest(DashboardModel):
    prompt: str | None = None
    contents: List[dict[str, Any]] | None = None
    model: str | None = None
    system_instruction: str | dict[str, Any] | None = None
    generation_config: dict[str, Any] | None = None
    safety_settings: List[dict[str, Any]] | None = None
    tools: List[dict[str, Any]] | None = None
    tool_config: dict[str, Any] | None = None
    dry_run: bool = False

    def resolved_contents(self) -> list[dict[str, Any]]:
        if self.contents:
            return self.contents
        if self.prompt and self.prompt.strip():
            return [{"role": "user", "parts": [{"text": self.prompt}]}]
        return []

    def provider_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"contents": self.resolved_contents()}
        if self.system_instruction is not None:
            if isinstance(self.system_instruction, str):
                body["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
            else:
                body["systemInstruction"] = self.system_instruction
        if self.generation_config is not None:
            body["generationConfig"] = self.generation_config
        if self.safety_settings is not None:
            body["safetySettings"] = self.safety_settings
        if self.tools is not None:
            body["tools"] = self.tools
        if self.tool_config is not None:
            body["toolConfig"] = self.tool_config
        return body


class GenerateUsage(DashboardModel):
    prompt_tokens: int | None = None
    candidates_tokens: int | None = None
    total_tokens: int | None = None
    estimated_tokens: int


class KeyRef(DashboardModel):
    id_short: str


class GenerateResponse(DashboardModel):
    ok: bool = True
    text: str | None = None
    usage: GenerateUsage
    key: KeyRef
    model: str
    attempts: int = Field(default=1, ge=1)
