"""
ai_api.py — AI strategy assistant.

Generation and analysis happen on the backend; this module shapes requests
and keeps the local conversation state (AIChatSession) a chat front end
needs: message history, conversation id and the last error string.

Usage:
    chat = AIChatSession(client)
    reply = await chat.send("Write an RSI mean-reversion strategy",
                            strategy_id="s1", auto_save_code=True)
    print(reply.response, reply.strategy_code)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from api_client import ApiClient
from errors import DeskError, describe_error
from strategies_api import ValidationIssue


DEFAULT_MARKET_TYPE = "equity"


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass
class ChatMessage:
    role: str  # user | assistant
    content: str
    timestamp: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(role=data.get("role", "assistant"), content=data.get("content", ""), timestamp=data.get("timestamp"))


@dataclass
class CodeSuggestion:
    title: str
    code: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeSuggestion":
        return cls(title=data.get("title", ""), code=data.get("code", ""), description=data.get("description", ""))


@dataclass
class ChatResponse:
    response: str
    conversation_id: str
    suggestions: List[CodeSuggestion] = field(default_factory=list)
    strategy_code: Optional[str] = None
    strategy_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_code(self) -> bool:
        return bool(self.strategy_code) or bool(self.metadata.get("has_code"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatResponse":
        return cls(
            response=data.get("response", ""),
            conversation_id=data.get("conversation_id", ""),
            suggestions=[CodeSuggestion.from_dict(s) for s in data.get("suggestions") or []],
            strategy_code=data.get("strategy_code"),
            strategy_id=data.get("strategy_id"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class GeneratedStrategy:
    strategy_code: str
    explanation: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeneratedStrategy":
        return cls(
            strategy_code=data.get("strategy_code", ""),
            explanation=data.get("explanation", ""),
            parameters=data.get("parameters") or {},
            metadata=data.get("metadata") or {},
        )


@dataclass
class StrategyAnalysis:
    valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    complexity: str = ""
    estimated_performance: str = ""
    code_metrics: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyAnalysis":
        analysis = data.get("analysis") or {}
        return cls(
            valid=bool(analysis.get("valid", False)),
            errors=[ValidationIssue.from_dict(e) for e in analysis.get("errors") or []],
            warnings=[ValidationIssue.from_dict(w) for w in analysis.get("warnings") or []],
            suggestions=list(analysis.get("suggestions") or []),
            complexity=analysis.get("complexity", ""),
            estimated_performance=analysis.get("estimated_performance", ""),
            code_metrics=data.get("code_metrics") or {},
        )


# ─── Endpoints ────────────────────────────────────────────────────────────────

async def chat(
    client: ApiClient,
    message: str,
    conversation_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    auto_save_code: bool = False,
) -> ChatResponse:
    payload: Dict[str, Any] = {"message": message}
    if conversation_id:
        payload["conversation_id"] = conversation_id
    if context:
        payload["context"] = {k: v for k, v in context.items() if v is not None}
    if auto_save_code:
        payload["auto_save_code"] = True
    data = await client.post("/api/ai/chat", payload)
    return ChatResponse.from_dict(data or {})


async def generate_strategy(
    client: ApiClient,
    requirements: str,
    market_type: str = DEFAULT_MARKET_TYPE,
    symbol: Optional[str] = None,
    exchange: Optional[str] = None,
    parameters: Optional[Dict[str, Any]] = None,
) -> GeneratedStrategy:
    payload = {
        "requirements": requirements,
        "market_type": market_type,
        "symbol": symbol,
        "exchange": exchange,
        "parameters": parameters,
    }
    data = await client.post(
        "/api/ai/generate-strategy", {k: v for k, v in payload.items() if v is not None}
    )
    return GeneratedStrategy.from_dict(data or {})


async def analyze_strategy(
    client: ApiClient,
    strategy_code: str,
    market_type: str = DEFAULT_MARKET_TYPE,
) -> StrategyAnalysis:
    data = await client.post(
        "/api/ai/analyze-strategy", {"strategy_code": strategy_code, "market_type": market_type}
    )
    return StrategyAnalysis.from_dict(data or {})


async def get_conversation(client: ApiClient, conversation_id: str) -> List[ChatMessage]:
    data = await client.get(f"/api/ai/conversations/{conversation_id}")
    return [ChatMessage.from_dict(m) for m in (data or {}).get("messages", [])]


async def get_strategy_conversation(client: ApiClient, strategy_id: str) -> Optional[Dict[str, Any]]:
    """The conversation attached to a strategy, or None if it has none yet."""
    return await client.get(f"/api/ai/conversations/strategy/{strategy_id}")


# ─── Chat session ─────────────────────────────────────────────────────────────

class AIChatSession:
    """
    Local conversation state.

    Failures set `error` to a user-facing string and re-raise, so a caller can
    either show the string or handle the exception.
    """

    def __init__(self, client: ApiClient) -> None:
        self.client = client
        self.messages: List[ChatMessage] = []
        self.conversation_id: Optional[str] = None
        self.error: Optional[str] = None
        self.loading = False

    async def load_for_strategy(self, strategy_id: str) -> None:
        """Resume the conversation previously attached to a strategy."""
        conversation = await get_strategy_conversation(self.client, strategy_id)
        if not conversation:
            return
        self.conversation_id = conversation.get("conversation_id") or conversation.get("id")
        self.messages = [ChatMessage.from_dict(m) for m in conversation.get("messages", [])]

    async def send(
        self,
        message: str,
        strategy_id: Optional[str] = None,
        market_type: Optional[str] = None,
        current_code: Optional[str] = None,
        auto_save_code: bool = False,
    ) -> ChatResponse:
        if not message.strip():
            raise ValueError("message must be non-empty")
        context = {"strategy_id": strategy_id, "market_type": market_type, "current_code": current_code}
        self.loading = True
        self.error = None
        try:
            reply = await chat(
                self.client,
                message,
                conversation_id=self.conversation_id,
                context=context,
                auto_save_code=auto_save_code and strategy_id is not None,
            )
        except DeskError as exc:
            self.error = describe_error(exc)
            logger.error(f"AI chat failed: {self.error}")
            raise
        finally:
            self.loading = False

        self.conversation_id = reply.conversation_id or self.conversation_id
        self.messages.append(ChatMessage(role="user", content=message))
        self.messages.append(ChatMessage(role="assistant", content=reply.response))
        return reply

    def clear(self) -> None:
        self.messages = []
        self.conversation_id = None
        self.error = None
