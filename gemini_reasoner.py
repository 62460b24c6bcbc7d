"""Gemini-backed reasoning boundary.

Each call renders the full (windowed) session context into one user turn and
forces the model to answer through exactly one of three function calls:
propose_action, declare_solution, request_clarification.
"""

from typing import Optional

from google import genai
from google.genai import types

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


def build_reasoning_tools() -> types.Tool:
    S, T = types.Schema, types.Type
    tiers = [t.name.lower() for t in RiskTier]

    return types.Tool(function_declarations=[
        types.FunctionDeclaration(
            name=FN_PROPOSE_ACTION,
            description="Run one diagnostic or remediation command and observe its output.",
            parameters=S(type=T.OBJECT, properties={
                "command":   S(type=T.STRING, description="The complete shell command. Single command only."),
                "rationale": S(type=T.STRING, description="One sentence: why this command, shown to the operator."),
                "tool":      S(type=T.STRING, description="Tool keyword from AVAILABLE TOOLS (e.g. 'network')."),
                "thought":   S(type=T.STRING, description="Your reasoning so far."),
            }, required=["command", "rationale", "thought"]),
        ),

        types.FunctionDeclaration(
            name=FN_DECLARE_SOLUTION,
            description="Declare the root cause and remediation plan. Ends the investigation.",
            parameters=S(type=T.OBJECT, properties={
                "root_cause": S(type=T.STRING, description="1-3 sentences naming the root cause."),
                "category":   S(type=T.STRING, enum=list(ROOT_CAUSE_CATEGORIES)),
                "confidence": S(type=T.INTEGER, description="0-100."),
                "evidence":   S(type=T.ARRAY, items=S(type=T.STRING),
                                description="Observed facts supporting the root cause."),
                "options":    S(type=T.ARRAY, items=S(type=T.OBJECT, properties={
                    "description": S(type=T.STRING),
                    "command":     S(type=T.STRING),
                    "risk":        S(type=T.STRING, enum=tiers),
                }, required=["description"]), description="Remediation options, safest first."),
                "thought":    S(type=T.STRING, description="Your reasoning / evaluation of the evidence."),
            }, required=["root_cause", "thought"]),
        ),

        types.FunctionDeclaration(
            name=FN_REQUEST_CLARIFICATION,
            description="Ask the operator a question needed to continue.",
            parameters=S(type=T.OBJECT, properties={
                "question": S(type=T.STRING),
                "thought":  S(type=T.STRING),
            }, required=["question"]),
        ),
    ])


class GeminiReasoner(ReasoningBoundary):
    """ReasoningBoundary backed by the Gemini API via google-genai."""

    def __init__(self, client: genai.Client, model: str, system_prompt: str = SYSTEM_PROMPT):
        self._client = client
        self._model = model
        self._system_prompt = system_prompt
        self._tools = build_reasoning_tools()

    @classmethod
    def from_api_key(cls, api_key: str, model: str, timeout_seconds: Optional[float] = None):
        http_options = None
        if timeout_seconds:
            http_options = types.HttpOptions(timeout=int(timeout_seconds * 1000))
        return cls(genai.Client(api_key=api_key, http_options=http_options), model)

    def decide(self, request: ReasoningRequest) -> Decision:
        response = self._client.models.generate_content(
            model    = self._model,
            contents = [types.Content(role="user", parts=[types.Part(text=render_history(request))])],
            config   = types.GenerateContentConfig(
                tools              = [self._tools],
                system_instruction = self._system_prompt,
                tool_config        = types.ToolConfig(
                    function_calling_config=types.FunctionCallingConfig(mode="ANY"),
                ),
            ),
        )
        return parse_response(response)


def parse_response(response) -> Decision:
    """Turn a generate_content response into exactly one decision."""
    if not response.candidates:
        feedback = getattr(response, "prompt_feedback", None)
        reason = getattr(feedback, "block_reason", None) if feedback else None
        raise MalformedDecision(f"empty response ({reason or 'safety/quota'})")

    parts = response.candidates[0].content.parts or []
    fc_parts = [p for p in parts if getattr(p, "function_call", None)]
    text = " ".join(p.text.strip() for p in parts if getattr(p, "text", None)).strip()
    if len(fc_parts) != 1:
        raise MalformedDecision(f"expected one function call, got {len(fc_parts)}")

    fc = fc_parts[0].function_call
    return decision_from_call(fc.name, dict(fc.args or {}), text)
