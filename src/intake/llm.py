"""
OpenAI completion for the intake conversation.

Provides:
- Intake system prompt
- Conversation history management (including tool exchanges)
- Streaming replies split into speakable segments
- Transfer-intent classification (transfer tool call or [TRANSFER] marker)
"""

import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import structlog
from openai import AsyncOpenAI

from src.intake.config import get_config
from src.intake.events import CallerTurn, CompletionReply, ReplyKind
from src.intake.tools import (
    TRANSFER_TO_MAIN_LINE,
    TRANSFER_TOOLS,
    IntakeToolExecutor,
    is_transfer_tool,
    parse_tool_arguments,
    safe_json_dumps,
    tool_definitions,
)
from src.intake.turns import redact_transcript_for_logs

logger = structlog.get_logger(__name__)

TRANSFER_MARKER = "[TRANSFER]"
MAX_TOOL_ROUNDS = 3
FALLBACK_REPLY = "I'm sorry, I'm having trouble right now. Could you please repeat that?"

_MARKER_RE = re.compile(re.escape(TRANSFER_MARKER), re.IGNORECASE)
_BOUNDARY_RE = re.compile(r"(?P<end>[.!?])\s+|(?P<bullet>•)")


def get_greeting(config: Optional[Any] = None) -> str:
    if config is None:
        config = get_config()
    return f"Thank you for calling {config.company_name}. Are you calling about a new case?"


def get_system_prompt(config: Optional[Any] = None, call_sid: str = "") -> str:
    """
    System prompt for the intake agent.

    Defines the intake script, the transfer rules and the speaking style.
    """
    if config is None:
        config = get_config()

    return f"""You are the intake assistant answering the phone for {config.company_name}, a personal injury law firm.
The active call SID is {call_sid or "unknown"}.

You already greeted the caller and asked whether they are calling about a new case.

CALL FLOW:
- If the caller is NOT calling about a new case, call transferToMainLine.
- If they are, collect one item at a time, asking a single short question per reply:
  name, phone number, email address, accident date, what happened and their injuries,
  medical treatment or hospital visits, who was at fault, whether there is a police report
  and if they have a copy, the other party's insurance, and whether they signed anything
  with an insurance company or another lawyer.
- Once everything is collected, call saveIntakeData, then call transferToAttorney.
- If the caller asks for a person or an attorney at any point, call transferToAttorney.
- If you cannot call a tool, end your reply with {TRANSFER_MARKER} to hand the caller to a person.

PHONE CALL GUIDELINES:
- This is spoken audio. Keep replies to one or two short sentences.
- End every reply that needs an answer with a question mark.
- Insert a '•' symbol every 5 to 10 words at natural pauses.
- Never give legal advice or promise an outcome.
- Be warm, patient and professional; callers may be injured or upset.
- Never reveal that you're an AI unless directly asked."""


def classify_reply(text: str) -> Tuple[str, ReplyKind, Optional[str]]:
    """
    Strip and detect the textual transfer marker.

    Returns:
        (speakable text, kind, trigger)
    """
    if _MARKER_RE.search(text or ""):
        cleaned = " ".join(_MARKER_RE.sub(" ", text).split())
        return cleaned, ReplyKind.TRANSFER, TRANSFER_MARKER
    return (text or "").strip(), ReplyKind.ORDINARY, None


class SegmentSplitter:
    """Cuts streamed text into speakable segments at sentence ends and '•'."""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        self._buffer += text
        segments: List[str] = []
        while True:
            match = _BOUNDARY_RE.search(self._buffer)
            if match is None:
                break
            if match.group("end"):
                segment = self._buffer[: match.start("end") + 1]
            else:
                segment = self._buffer[: match.start()]
            self._buffer = self._buffer[match.end():]
            segment = segment.strip()
            if segment:
                segments.append(segment)
        return segments

    def flush(self) -> Optional[str]:
        remainder = self._buffer.strip()
        self._buffer = ""
        return remainder or None


@dataclass
class ConversationTurn:
    """A single message in the conversation."""
    role: str  # "user", "assistant" or "tool"
    content: Optional[str]
    extra: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        message.update(self.extra)
        return message


class ConversationHistory:
    """Manages conversation history with a rolling window."""

    def __init__(self, max_turns: int = 20):
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []

    def add_user_message(self, content: str) -> None:
        self._turns.append(ConversationTurn(role="user", content=content))
        self._trim()

    def add_assistant_message(self, content: str) -> None:
        self._turns.append(ConversationTurn(role="assistant", content=content))
        self._trim()

    def add_tool_exchange(self, content: Optional[str], calls: List[Dict[str, Any]], results: List[Tuple[str, str]]) -> None:
        """Record an assistant tool-call message followed by one tool message per result."""
        self._turns.append(ConversationTurn(
            role="assistant",
            content=content or None,
            extra={
                "tool_calls": [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": call["arguments"] or "{}"},
                    }
                    for call in calls
                ],
            },
        ))
        for call_id, result in results:
            self._turns.append(ConversationTurn(role="tool", content=result, extra={"tool_call_id": call_id}))
        self._trim()

    def _trim(self) -> None:
        max_messages = self.max_turns * 2
        if len(self._turns) <= max_messages:
            return
        self._turns = self._turns[-max_messages:]
        # Never start the window inside a tool exchange
        while self._turns and self._turns[0].role != "user":
            self._turns.pop(0)

    def get_messages(self) -> List[Dict[str, Any]]:
        return [turn.to_message() for turn in self._turns]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)


class CompletionService:
    """
    Streaming completion with tools for one call.

    Every reply segment gets the next index of a session-wide counter, which
    is the order the sequencer delivers audio in.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        client: Optional[AsyncOpenAI] = None,
        tools: Optional[IntakeToolExecutor] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client if client is not None else AsyncOpenAI(api_key=config.openai_api_key)
        self._tools = tools if tools is not None else IntakeToolExecutor()
        self._history = ConversationHistory(max_turns=config.max_history_turns)
        self._next_index = 0
        self.call_sid = ""

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def tools(self) -> IntakeToolExecutor:
        return self._tools

    @property
    def next_index(self) -> int:
        return self._next_index

    def set_call_sid(self, call_sid: str) -> None:
        self.call_sid = call_sid
        self._tools.call_sid = call_sid

    def _reply(self, text: str, turn: CallerTurn, kind: ReplyKind = ReplyKind.ORDINARY, trigger: Optional[str] = None) -> CompletionReply:
        reply = CompletionReply(
            index=self._next_index,
            text=text,
            interaction_count=turn.interaction_count,
            kind=kind,
            trigger=trigger,
        )
        self._next_index += 1
        return reply

    def _segment_reply(self, segment: str, turn: CallerTurn) -> Optional[CompletionReply]:
        text, kind, trigger = classify_reply(segment)
        if kind == ReplyKind.TRANSFER:
            return self._reply(text or TRANSFER_TOOLS[TRANSFER_TO_MAIN_LINE], turn, kind, trigger)
        if not text:
            return None
        return self._reply(text, turn)

    async def complete(self, turn: CallerTurn) -> AsyncGenerator[CompletionReply, None]:
        """
        Run one completion for a caller turn.

        Yields ordinary segments as they stream in. A transfer reply (tool or
        marker) is always the last one yielded.
        """
        logger.info(
            "Completion started",
            call_sid=self.call_sid,
            interaction_count=turn.interaction_count,
            text=redact_transcript_for_logs(turn.text)[:80],
        )
        self._history.add_user_message(turn.text)
        started = time.time()

        for round_number in range(MAX_TOOL_ROUNDS):
            messages = [{"role": "system", "content": get_system_prompt(self.config, self.call_sid)}]
            messages.extend(self._history.get_messages())

            splitter = SegmentSplitter()
            full_text = ""
            tool_calls: Dict[int, Dict[str, Any]] = {}

            try:
                stream = await self._client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    tools=tool_definitions(),
                    stream=True,
                    max_tokens=300,
                    temperature=0.7,
                )

                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta

                    if getattr(delta, "content", None):
                        full_text += delta.content
                        for segment in splitter.feed(delta.content):
                            reply = self._segment_reply(segment, turn)
                            if reply is None:
                                continue
                            yield reply
                            if reply.is_transfer:
                                self._history.add_assistant_message(full_text)
                                return

                    for tc in getattr(delta, "tool_calls", None) or []:
                        entry = tool_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                        if tc.id:
                            entry["id"] = tc.id
                        if tc.function is not None:
                            if tc.function.name:
                                entry["name"] += tc.function.name
                            if tc.function.arguments:
                                entry["arguments"] += tc.function.arguments

            except Exception as e:
                logger.error("Completion failed", call_sid=self.call_sid, error=str(e))
                self._history.add_assistant_message(FALLBACK_REPLY)
                yield self._reply(FALLBACK_REPLY, turn)
                return

            remainder = splitter.flush()
            if remainder:
                reply = self._segment_reply(remainder, turn)
                if reply is not None:
                    yield reply
                    if reply.is_transfer:
                        self._history.add_assistant_message(full_text)
                        return

            calls = [tool_calls[i] for i in sorted(tool_calls)]
            if not calls:
                self._history.add_assistant_message(full_text)
                logger.info(
                    "Completion finished",
                    call_sid=self.call_sid,
                    interaction_count=turn.interaction_count,
                    segments=self._next_index,
                    total_ms=round((time.time() - started) * 1000, 1),
                )
                return

            transfer = next((c for c in calls if is_transfer_tool(c["name"])), None)
            results: List[Tuple[str, str]] = []
            for call in calls:
                result = await self._tools.execute(call["name"], parse_tool_arguments(call["arguments"]))
                results.append((call["id"], safe_json_dumps(result)))
            self._history.add_tool_exchange(full_text, calls, results)

            if transfer is not None:
                logger.info("Transfer tool selected", call_sid=self.call_sid, tool=transfer["name"])
                yield self._reply(TRANSFER_TOOLS[transfer["name"]], turn, ReplyKind.TRANSFER, transfer["name"])
                return

            logger.info(
                "Tool round complete, continuing completion",
                call_sid=self.call_sid,
                round=round_number + 1,
                tools=[c["name"] for c in calls],
            )

        logger.warning("Tool round limit reached", call_sid=self.call_sid, rounds=MAX_TOOL_ROUNDS)
