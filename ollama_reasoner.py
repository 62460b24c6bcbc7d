"""Local reasoning backend: an Ollama model reached through LiteLLM.

Same contract as the Gemini backend: one user turn holding the rendered
session, answered by exactly one of the three decision functions. Small local
models do not always emit a tool call, so a reply whose text is a JSON object
{"name": ..., "arguments": {...}} is accepted as the call.
"""

import json
import re
from typing import Optional

import litellm

from agent_config import DEFAULT_OLLAMA_MODEL, DEFAULT_OLLAMA_URL
from agent_models import ROOT_CAUSE_CATEGORIES, RiskTier
from reasoning_boundary import (
    FN_DECLARE_SOLUTION,
    FN_PROPOSE_ACTION,
    FN_REQUEST_CLARIFICATION,
    SYSTEM_PROMPT,
    Decision,
    MalformedDecision,
    ReasoningBoundary,
    ReasoningRequest,
    decision_from_call,
    render_history,
)


_JSON_REPLY_HINT = (
    "\n\nIf you cannot call a function, reply with ONLY a JSON object: "
    '{"name": "<function name>", "arguments": {...}}'
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def build_function_specs() -> list[dict]:
    """The three decision functions in OpenAI tool format."""
    tiers = [t.name.lower() for t in RiskTier]
    return [
        {"type": "function", "function": {
            "name": FN_PROPOSE_ACTION,
            "description": "Run one diagnostic or remediation command and observe its output.",
            "parameters": {"type": "object", "properties": {
                "command":   {"type": "string", "description": "The complete shell command. Single command only."},
                "rationale": {"type": "string", "description": "One sentence: why this command."},
                "tool":      {"type": "string", "description": "Tool keyword from AVAILABLE TOOLS."},
                "thought":   {"type": "string"},
            }, "required": ["command", "rationale", "thought"]},
        }},
        {"type": "function", "function": {
            "name": FN_DECLARE_SOLUTION,
            "description": "Declare the root cause and remediation plan. Ends the investigation.",
            "parameters": {"type": "object", "properties": {
                "root_cause": {"type": "string"},
                "category":   {"type": "string", "enum": list(ROOT_CAUSE_CATEGORIES)},
                "confidence": {"type": "integer", "description": "0-100."},
                "evidence":   {"type": "array", "items": {"type": "string"}},
                "options":    {"type": "array", "items": {"type": "object", "properties": {
                    "description": {"type": "string"},
                    "command":     {"type": "string"},
                    "risk":        {"type": "string", "enum": tiers},
                }, "required": ["description"]}},
                "thought":    {"type": "string"},
            }, "required": ["root_cause", "thought"]},
        }},
        {"type": "function", "function": {
            "name": FN_REQUEST_CLARIFICATION,
            "description": "Ask the operator a question needed to continue.",
            "parameters": {"type": "object", "properties": {
                "question": {"type": "string"},
                "thought":  {"type": "string"},
            }, "required": ["question"]},
        }},
    ]


class OllamaReasoner(ReasoningBoundary):
    """ReasoningBoundary backed by a local Ollama server via litellm."""

    def __init__(self, model: str = DEFAULT_OLLAMA_MODEL, base_url: str = DEFAULT_OLLAMA_URL,
                 timeout_seconds: Optional[float] = None, temperature: float = 0.2,
                 system_prompt: str = SYSTEM_PROMPT):
        self._model = model if "/" in model else f"ollama_chat/{model}"
        self._base_url = base_url
        self._timeout = timeout_seconds
        self._temperature = temperature
        self._system_prompt = system_prompt + _JSON_REPLY_HINT
        self._tools = build_function_specs()
        litellm.suppress_debug_info = True

    @property
    def model_name(self) -> str:
        return self._model

    def decide(self, request: ReasoningRequest) -> Decision:
        response = litellm.completion(
            model       = self._model,
            messages    = [
                {"role": "system", "content": self._system_prompt},
                {"role": "user", "content": render_history(request)},
            ],
            tools       = self._tools,
            api_base    = self._base_url,
            temperature = self._temperature,
            timeout     = self._timeout,
        )
        return parse_completion(response)


def parse_completion(response) -> Decision:
    """Turn a litellm chat completion into exactly one decision."""
    if not getattr(response, "choices", None):
        raise MalformedDecision("empty completion")
    message = response.choices[0].message
    text = (getattr(message, "content", None) or "").strip()
    tool_calls = getattr(message, "tool_calls", None) or []

    if len(tool_calls) > 1:
        raise MalformedDecision(f"expected one function call, got {len(tool_calls)}")
    if tool_calls:
        fn = tool_calls[0].function
        return decision_from_call(fn.name, _load_arguments(fn.arguments), text)

    if not text:
        raise MalformedDecision("expected one function call, got 0")
    try:
        payload = json.loads(_FENCE_RE.sub("", text))
    except json.JSONDecodeError as e:
        raise MalformedDecision(f"reply is neither a function call nor JSON: {e}") from e
    if not isinstance(payload, dict) or "name" not in payload:
        raise MalformedDecision("JSON reply has no function name")
    return decision_from_call(str(payload["name"]), _load_arguments(payload.get("arguments")))


def _load_arguments(raw) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedDecision(f"function arguments are not JSON: {e}") from e
    if not isinstance(value, dict):
        raise MalformedDecision("function arguments are not an object")
    return value
