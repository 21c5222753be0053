"""
Air Quality Chatbot Service

Drives a two-phase exchange with the LLM:
1. First completion with tool declarations (model decides tool use)
2. Sequential execution of every requested tool call
3. Second completion, without tools, grounded in the tool results

Each request runs as an explicit state machine (ConversationRun).
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from aqichat_core.logger import logger
from .cache import ToolCaches
from .feature_service import FeatureServiceSource, PlaceDataSource
from .guardrails import clip_message, get_system_prompt, sanitize_history
from .openai_adapter import OpenAIAdapter, ToolCall
from .tools import AQIToolRegistry


BUSY_REPLY = "The AI is busy right now. Please try again in a moment."
NO_CONTENT_REPLY = "OpenAI returned no content."
SERVER_ERROR_REPLY = "Server error while answering. Please try again."
CONFIG_ERROR_REPLY = (
    "Server configuration error: missing OpenAI API key. "
    "Please set OPENAI_API_KEY and redeploy."
)


class ConversationState(str, Enum):
    START = "start"
    AWAITING_FIRST_COMPLETION = "awaiting_first_completion"
    NO_TOOL_CALL = "no_tool_call"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_SECOND_COMPLETION = "awaiting_second_completion"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    ConversationState.START: {ConversationState.AWAITING_FIRST_COMPLETION},
    ConversationState.AWAITING_FIRST_COMPLETION: {
        ConversationState.NO_TOOL_CALL,
        ConversationState.TOOL_CALLS_PENDING,
    },
    ConversationState.NO_TOOL_CALL: {ConversationState.DONE},
    ConversationState.TOOL_CALLS_PENDING: {ConversationState.EXECUTING_TOOLS},
    ConversationState.EXECUTING_TOOLS: {ConversationState.AWAITING_SECOND_COMPLETION},
    ConversationState.AWAITING_SECOND_COMPLETION: {ConversationState.DONE},
    ConversationState.DONE: set(),
    ConversationState.FAILED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class ChatResult:
    """Final reply and optional map action for one chat request"""
    reply: str
    action: Optional[Dict[str, Any]] = None


@dataclass
class ConversationRun:
    """
    Working state of one chat request

    Owns the message list, which only ever grows during the run.
    """
    messages: List[Dict[str, Any]]
    state: ConversationState = ConversationState.START
    transitions: List[ConversationState] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    action: Optional[Dict[str, Any]] = None
    reply: Optional[str] = None

    def advance(self, target: ConversationState):
        # Any non-terminal state may fail
        if target is ConversationState.FAILED:
            allowed = self.state not in (ConversationState.DONE, ConversationState.FAILED)
        else:
            allowed = target in _TRANSITIONS[self.state]
        if not allowed:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")

        self.transitions.append(self.state)
        self.state = target

    def finish(self, reply: str):
        self.reply = reply
        self.advance(ConversationState.DONE)

    def fail(self, reply: str):
        self.reply = reply
        self.action = None
        self.advance(ConversationState.FAILED)

    def add_tool_calls(self, assistant_message: Dict[str, Any], calls: List[ToolCall]):
        self.advance(ConversationState.TOOL_CALLS_PENDING)
        self.tool_calls = list(calls)
        self.messages.append({
            "role": "assistant",
            "content": assistant_message.get("content"),
            "tool_calls": assistant_message.get("tool_calls"),
        })

    def add_tool_result(self, call: ToolCall, result: Any):
        if self.state is not ConversationState.EXECUTING_TOOLS:
            raise InvalidTransition(f"tool result while {self.state.value}")

        self.messages.append({
            "role": "tool",
            "tool_call_id": call.id,
            "name": call.name,
            "content": json.dumps(result, ensure_ascii=False),
        })

        # Last tool call carrying an action wins
        if isinstance(result, dict) and isinstance(result.get("action"), dict):
            self.action = result["action"]

    def unanswered_calls(self) -> List[str]:
        answered = [m.get("tool_call_id") for m in self.messages if m.get("role") == "tool"]
        missing = []
        for call in self.tool_calls:
            if call.id in answered:
                answered.remove(call.id)
            else:
                missing.append(call.id)
        return missing


class AirQualityChatbotService:
    """
    Air Quality Chatbot Service with OpenAI function calling

    Caches and data source are created once per process and shared by
    every request; the message list is private to each request.
    """

    def __init__(
        self,
        llm_adapter: Optional[OpenAIAdapter] = None,
        source: Optional[PlaceDataSource] = None,
        caches: Optional[ToolCaches] = None,
        tool_registry: Optional[AQIToolRegistry] = None
    ):
        self.llm_adapter = llm_adapter or OpenAIAdapter()
        self.source = source or FeatureServiceSource()
        self.caches = caches or ToolCaches()
        self.tool_registry = tool_registry or AQIToolRegistry(self.source, self.caches)

    def is_configured(self) -> bool:
        return self.llm_adapter.has_valid_key()

    def build_messages(self, user_message: str, history: Any = None) -> List[Dict[str, Any]]:
        """System persona, recent history, then the current user message"""
        return [
            {"role": "system", "content": get_system_prompt()},
            *sanitize_history(history),
            {"role": "user", "content": clip_message(user_message)},
        ]

    async def answer(self, user_message: str, history: Any = None) -> ChatResult:
        """
        Answer one user message end-to-end

        Args:
            user_message: Current question (clipped to the message cap)
            history: Prior turns resupplied by the client

        Returns:
            ChatResult; failures become degraded replies, never exceptions
        """
        run = ConversationRun(messages=self.build_messages(user_message, history))
        logger.bind(context="chat").info(f"Chat request: {run.messages[-1]['content'][:100]}")

        try:
            await self._run(run)
        except Exception as e:
            logger.exception(f"Chat run failed in state {run.state.value}: {e}")
            if run.state not in (ConversationState.DONE, ConversationState.FAILED):
                run.fail(SERVER_ERROR_REPLY)

        logger.bind(context="chat").info(
            f"Chat finished: state={run.state.value}, tools={[c.name for c in run.tool_calls]}, "
            f"action={'yes' if run.action else 'no'}"
        )
        return ChatResult(reply=run.reply, action=run.action)

    async def _run(self, run: ConversationRun):
        run.advance(ConversationState.AWAITING_FIRST_COMPLETION)
        first = await self.llm_adapter.complete(run.messages, tools=self.tool_registry.openai_tools())
        if not first.ok:
            logger.error(first.error)
            run.fail(BUSY_REPLY)
            return

        calls = first.tool_calls
        if not calls:
            run.advance(ConversationState.NO_TOOL_CALL)
            run.finish(first.content or NO_CONTENT_REPLY)
            return

        run.add_tool_calls(first.message, calls)
        await self._execute_tools(run)

        # Every call needs exactly one tool message before finalizing
        missing = run.unanswered_calls()
        if missing:
            raise InvalidTransition(f"tool calls without results: {missing}")

        run.advance(ConversationState.AWAITING_SECOND_COMPLETION)
        second = await self.llm_adapter.complete(run.messages)
        if not second.ok:
            logger.error(second.error)
            run.fail(BUSY_REPLY)
            return

        run.finish(second.content or NO_CONTENT_REPLY)

    async def _execute_tools(self, run: ConversationRun):
        """Run tool calls one at a time, in the order the model emitted them"""
        run.advance(ConversationState.EXECUTING_TOOLS)
        for call in run.tool_calls:
            result = await self.tool_registry.invoke(call.name, call.arguments_json)
            run.add_tool_result(call, result)

    async def health_check(self) -> Dict[str, Any]:
        """
        Check health of AI service components

        Returns:
            Health status dictionary
        """
        return {
            "llm_service": "configured" if self.is_configured() else "missing_api_key",
            "llm_model": self.llm_adapter.model,
            "data_source": self.source.name,
            "cached_rankings": len(self.caches.top_cities),
            "cached_places": len(self.caches.city),
        }

    async def close(self):
        """Close upstream HTTP clients"""
        await self.llm_adapter.close()
        await self.source.close()
