"""Built-in conversation tools for the chain engine."""

from __future__ import annotations

import difflib
import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from chain_agent.agent.registry import FanOut, ToolRegistry, ToolSpec
from chain_agent.config import StoreConfig
from chain_agent.store import Contact, ConversationStore, StoredMessage, idempotency_key
from chain_agent.types import (
    NextAction,
    Partition,
    SideEffect,
    ToolContext,
    ToolResult,
)

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[\w']+", flags=re.UNICODE)
_STOPWORDS = frozenset(
    "a an and are about did do does for from has have how i in is it me my of on "
    "or say said the their there this to was what when where which who whom why "
    "will with you your all any everyone everybody".split()
)


class GetConversationsInput(BaseModel):
    limit: int = Field(default=5, ge=1, le=50)


class ResolveConversationInput(BaseModel):
    name: str = Field(min_length=1)


class GetMessagesInput(BaseModel):
    conversation_id: str = Field(min_length=1)
    limit: int = Field(default=20, ge=1, le=200)


class SummarizeConversationInput(BaseModel):
    conversation_id: str = Field(min_length=1)
    max_sentences: int = Field(default=3, ge=1, le=10)


class AnalyzeConversationInput(BaseModel):
    conversation_id: str = Field(min_length=1)
    query: str = Field(min_length=1)


class AnalyzeConversationsMultiInput(BaseModel):
    query: str = Field(min_length=1)
    conversation_ids: list[str] = Field(default_factory=list)
    max_conversations: int = Field(default=5, ge=1, le=20)


class GetConversationInfoInput(BaseModel):
    conversation_id: str = Field(min_length=1)
    include_participants: bool = True
    include_statistics: bool = True


class LookupContactsInput(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=20)
    min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)


class SendMessageInput(BaseModel):
    text: str = Field(min_length=1, max_length=4000)
    conversation_id: str | None = None
    recipient_id: str | None = None


class ClarificationOption(BaseModel):
    id: str
    title: str


class RequestClarificationInput(BaseModel):
    question: str = Field(min_length=1)
    options: list[ClarificationOption] = Field(default_factory=list)


def register_builtin_tools(
    registry: ToolRegistry,
    store: ConversationStore,
    *,
    config: StoreConfig | None = None,
) -> None:
    """Register default tool set used by the planners.

    Tools:
    - `get_conversations`: the requester's most recent conversations.
    - `resolve_conversation`: find a conversation by title or contact name.
    - `get_conversation_info`: participants and statistics of one conversation.
    - `lookup_contacts`: find a person by name, scored by match quality.
    - `get_messages`: recent messages of one conversation.
    - `summarize_conversation`: extractive summary of one conversation.
    - `analyze_conversation`: answer a question from one conversation.
    - `analyze_conversations_multi`: fan-out of `analyze_conversation`.
    - `send_message`: idempotent write of one message, by conversation or recipient.
    - `request_clarification`: hand a question back to the user.
    """

    settings = config or StoreConfig()

    def _require_access(conversation_id: str, context: ToolContext) -> None:
        if not store.is_participant(conversation_id, context.requester_id):
            raise PermissionError(f"No access to conversation {conversation_id}")

    def _get_conversations(input_data: GetConversationsInput, context: ToolContext) -> ToolResult:
        summaries = store.list_conversations(context.requester_id, input_data.limit)
        if not summaries:
            return ToolResult(
                success=True,
                data={"conversations": []},
                next_action=NextAction.COMPLETE,
                instruction_for_planner="The user has no conversations. Tell them.",
            )
        conversations = [
            {
                "conversation_id": item.conversation_id,
                "title": item.title,
                "last_message": _truncate(item.last_message, 80),
                "last_active": item.last_active,
            }
            for item in summaries
        ]
        return ToolResult(
            success=True,
            data={"conversations": conversations},
            next_action=NextAction.CONTINUE,
            instruction_for_planner=(
                f"Found {len(conversations)} conversations, most recent first. "
                "Reference one with $<step>.data.conversations.<n>.conversation_id."
            ),
        )

    def _resolve_conversation(
        input_data: ResolveConversationInput, context: ToolContext
    ) -> ToolResult:
        matches = store.find_conversations(context.requester_id, input_data.name)
        if not matches:
            return ToolResult(
                success=False,
                next_action=NextAction.COMPLETE,
                instruction_for_planner=f"No conversation matches {input_data.name!r}. Tell the user.",
                confidence=0.0,
                error="not_found",
            )
        if len(matches) > 1:
            return ToolResult(
                success=True,
                data={
                    "question": f"Which conversation with {input_data.name} did you mean?",
                    "options": [
                        {"id": item.conversation_id, "title": item.title} for item in matches
                    ],
                },
                next_action=NextAction.CLARIFICATION_NEEDED,
                instruction_for_planner="Several conversations match. Ask the user to pick one.",
                confidence=0.5,
            )
        match = matches[0]
        exact = match.title.lower() == input_data.name.strip().lower()
        return ToolResult(
            success=True,
            data={"conversation_id": match.conversation_id, "title": match.title},
            next_action=NextAction.CONTINUE,
            instruction_for_planner=f"Resolved to conversation {match.title!r}.",
            confidence=0.95 if exact else 0.7,
        )

    def _get_messages(input_data: GetMessagesInput, context: ToolContext) -> ToolResult:
        _require_access(input_data.conversation_id, context)
        messages = store.get_messages(input_data.conversation_id, input_data.limit)
        return ToolResult(
            success=True,
            data={
                "conversation_id": input_data.conversation_id,
                "messages": [
                    {"sender": message.sender_name, "text": message.text, "sent_at": message.sent_at}
                    for message in messages
                ],
            },
            next_action=NextAction.CONTINUE,
            instruction_for_planner=f"Retrieved {len(messages)} messages.",
        )

    def _summarize(input_data: SummarizeConversationInput, context: ToolContext) -> ToolResult:
        _require_access(input_data.conversation_id, context)
        messages = store.get_messages(input_data.conversation_id, settings.max_messages)
        if not messages:
            return ToolResult(
                success=True,
                data={"conversation_id": input_data.conversation_id, "summary": ""},
                next_action=NextAction.COMPLETE,
                instruction_for_planner="The conversation has no messages. Tell the user.",
            )
        summary = summarize_messages(messages, input_data.max_sentences)
        return ToolResult(
            success=True,
            data={
                "conversation_id": input_data.conversation_id,
                "summary": summary,
                "message_count": len(messages),
            },
            next_action=NextAction.COMPLETE,
            instruction_for_planner=f"Present this summary to the user: {summary}",
            confidence=0.9,
        )

    def _analyze(input_data: AnalyzeConversationInput, context: ToolContext) -> ToolResult:
        _require_access(input_data.conversation_id, context)
        result = analyze_messages(
            store.get_messages(input_data.conversation_id, settings.max_messages),
            input_data.query,
        )
        result.next_action = NextAction.COMPLETE
        return result

    def _partition(
        input_data: AnalyzeConversationsMultiInput, context: ToolContext
    ) -> list[Partition]:
        if input_data.conversation_ids:
            ids = input_data.conversation_ids[: input_data.max_conversations]
        else:
            terms = _content_terms(input_data.query)
            ids = [
                item.conversation_id
                for item in store.list_conversations(context.requester_id, settings.list_limit)
                if any(
                    terms & _content_terms(message.text)
                    for message in store.get_messages(item.conversation_id, settings.max_messages)
                )
            ][: input_data.max_conversations]
        return [
            Partition(
                source_id=conversation_id,
                source_label=_label(conversation_id, context),
                position=position,
            )
            for position, conversation_id in enumerate(ids)
        ]

    def _label(conversation_id: str, context: ToolContext) -> str:
        # Unknown or foreign conversations keep their id; the worker reports the failure.
        if not store.is_participant(conversation_id, context.requester_id):
            logger.warning(
                "Conversation %s is not visible to %s", conversation_id, context.requester_id
            )
            return conversation_id
        return store.title_for(conversation_id, context.requester_id)

    def _analyze_partition(
        input_data: AnalyzeConversationsMultiInput,
        partition: Partition,
        context: ToolContext,
    ) -> ToolResult:
        _require_access(partition.source_id, context)
        messages = store.get_messages(partition.source_id, settings.max_messages)
        return analyze_messages(messages, input_data.query)

    def _conversation_info(
        input_data: GetConversationInfoInput, context: ToolContext
    ) -> ToolResult:
        _require_access(input_data.conversation_id, context)
        people = store.participants(input_data.conversation_id)
        title = store.title_for(input_data.conversation_id, context.requester_id)
        info: dict[str, Any] = {
            "conversation_id": input_data.conversation_id,
            "title": title,
            "participant_count": len(people),
            "is_group": len(people) > 2,
        }
        if input_data.include_participants:
            info["participants"] = [
                {"user_id": user_id, "name": name} for user_id, name in people.items()
            ]
            info["other_participants"] = [
                {"user_id": user_id, "name": name}
                for user_id, name in people.items()
                if user_id != context.requester_id
            ]
        stats = store.message_stats(input_data.conversation_id)
        if input_data.include_statistics:
            info["statistics"] = {
                "message_count": stats.message_count,
                "first_message_at": stats.first_message_at,
                "last_message_at": stats.last_message_at,
                "messages_by_participant": {
                    people.get(sender_id, sender_id): count
                    for sender_id, count in stats.per_sender.items()
                },
            }
        return ToolResult(
            success=True,
            data=info,
            next_action=NextAction.CONTINUE,
            instruction_for_planner=(
                f"Conversation {title!r} has {len(people)} participants and "
                f"{stats.message_count} messages."
            ),
        )

    def _lookup_contacts(input_data: LookupContactsInput, context: ToolContext) -> ToolResult:
        scored = [
            (contact, contact_confidence(contact, input_data.query))
            for contact in store.list_contacts(context.requester_id)
        ]
        matches = sorted(
            (item for item in scored if item[1] >= input_data.min_confidence),
            key=lambda item: (-item[1], item[0].display_name),
        )[: input_data.limit]
        contacts = [
            {
                "id": contact.user_id,
                "name": contact.display_name,
                "confidence": confidence,
                "is_recent": contact.is_recent,
                "last_contact": contact.last_contact,
            }
            for contact, confidence in matches
        ]
        if not contacts:
            return ToolResult(
                success=False,
                data={"query": input_data.query, "contacts": []},
                next_action=NextAction.COMPLETE,
                instruction_for_planner=f"No contacts match {input_data.query!r}. Tell the user.",
                confidence=0.0,
                error="not_found",
            )
        top = contacts[0]
        if needs_contact_clarification(contacts):
            return ToolResult(
                success=True,
                data={
                    "query": input_data.query,
                    "contacts": contacts,
                    "question": f"I found {len(contacts)} contacts for {input_data.query!r}. Which one did you mean?",
                    "options": [{"id": item["id"], "title": item["name"]} for item in contacts],
                },
                next_action=NextAction.CLARIFICATION_NEEDED,
                instruction_for_planner="Present these contacts and wait for the user's choice.",
                confidence=top["confidence"],
            )
        return ToolResult(
            success=True,
            data={
                "query": input_data.query,
                "contacts": contacts,
                "recipient_id": top["id"],
                "recipient_name": top["name"],
            },
            next_action=NextAction.CONTINUE,
            instruction_for_planner=f"Use recipient_id {top['id']!r} ({top['name']}) for the next call.",
            confidence=top["confidence"],
        )

    def _direct_conversation(recipient_id: str, context: ToolContext) -> tuple[str, bool]:
        existing = store.find_direct_conversation(context.requester_id, recipient_id)
        if existing is not None:
            return existing, False
        recipient_name = store.display_name(recipient_id)
        if recipient_name is None:
            raise LookupError(f"Unknown recipient {recipient_id}")
        created = store.create_conversation(
            {
                context.requester_id: store.display_name(context.requester_id)
                or context.requester_id,
                recipient_id: recipient_name,
            },
            conversation_id=idempotency_key("direct", *sorted((context.requester_id, recipient_id))),
        )
        logger.info("Created conversation %s with %s", created, recipient_id)
        return created, True

    def _send_message(input_data: SendMessageInput, context: ToolContext) -> ToolResult:
        created = False
        if input_data.conversation_id:
            conversation_id = input_data.conversation_id
        elif input_data.recipient_id:
            conversation_id, created = _direct_conversation(input_data.recipient_id, context)
        else:
            raise ValueError("send_message needs a conversation_id or a recipient_id")
        _require_access(conversation_id, context)
        message_id = store.add_message(
            conversation_id,
            context.requester_id,
            input_data.text,
            message_id=idempotency_key(
                context.request_id,
                conversation_id,
                context.requester_id,
                input_data.text,
            ),
        )
        return ToolResult(
            success=True,
            data={
                "conversation_id": conversation_id,
                "message_id": message_id,
                "conversation_created": created,
            },
            next_action=NextAction.COMPLETE,
            instruction_for_planner="Message sent. Confirm to the user.",
        )

    def _request_clarification(
        input_data: RequestClarificationInput, context: ToolContext
    ) -> ToolResult:
        return ToolResult(
            success=True,
            data=input_data.model_dump(),
            next_action=NextAction.CLARIFICATION_NEEDED,
            instruction_for_planner="Wait for the user's answer.",
        )

    registry.register(
        ToolSpec(
            name="get_conversations",
            description="List the user's most recent conversations.",
            args_schema=GetConversationsInput,
            handler=_get_conversations,
            tags=["conversations"],
        )
    )
    registry.register(
        ToolSpec(
            name="resolve_conversation",
            description="Find a conversation by its title or a contact's name.",
            args_schema=ResolveConversationInput,
            handler=_resolve_conversation,
            tags=["conversations"],
        )
    )
    registry.register(
        ToolSpec(
            name="get_conversation_info",
            description="Get participants, message counts and activity for one conversation.",
            args_schema=GetConversationInfoInput,
            handler=_conversation_info,
            inherit_parameters=("conversation_id",),
            tags=["conversations"],
        )
    )
    registry.register(
        ToolSpec(
            name="lookup_contacts",
            description=(
                "Find a person by name. Returns recipient_id for send_message, or asks "
                "the user to choose when several people match."
            ),
            args_schema=LookupContactsInput,
            handler=_lookup_contacts,
            tags=["contacts"],
        )
    )
    registry.register(
        ToolSpec(
            name="get_messages",
            description="Fetch recent messages from one conversation.",
            args_schema=GetMessagesInput,
            handler=_get_messages,
            inherit_parameters=("conversation_id",),
            tags=["messages"],
        )
    )
    registry.register(
        ToolSpec(
            name="summarize_conversation",
            description="Summarize one conversation.",
            args_schema=SummarizeConversationInput,
            handler=_summarize,
            inherit_parameters=("conversation_id",),
            tags=["nlp"],
        )
    )
    registry.register(
        ToolSpec(
            name="analyze_conversation",
            description="Answer a question using the messages of one conversation.",
            args_schema=AnalyzeConversationInput,
            handler=_analyze,
            inherit_parameters=("conversation_id",),
            tags=["nlp"],
        )
    )
    registry.register(
        ToolSpec(
            name="analyze_conversations_multi",
            description=(
                "Answer a question across several recent conversations, e.g. "
                "'Who is coming tonight?'. Each finding is attributed to its conversation."
            ),
            args_schema=AnalyzeConversationsMultiInput,
            fan_out=FanOut(partitioner=_partition, worker=_analyze_partition),
            tags=["nlp", "fan-out"],
        )
    )
    registry.register(
        ToolSpec(
            name="send_message",
            description=(
                "Send a text message into a conversation, or to a recipient_id from "
                "lookup_contacts (a direct conversation is created if needed)."
            ),
            args_schema=SendMessageInput,
            handler=_send_message,
            side_effect=SideEffect.MUTATING,
            inherit_parameters=("conversation_id", "recipient_id"),
            target_parameters=("conversation_id", "recipient_id"),
            target_providers=("lookup_contacts", "resolve_conversation"),
            tags=["messages", "write"],
        )
    )
    registry.register(
        ToolSpec(
            name="request_clarification",
            description="Ask the user a clarifying question and stop.",
            args_schema=RequestClarificationInput,
            handler=_request_clarification,
            critical=False,
            tags=["control"],
        )
    )


def summarize_messages(messages: list[StoredMessage], max_sentences: int) -> str:
    sentences: list[str] = []
    for message in messages:
        for part in re.split(r"(?<=[.!?])\s+", message.text):
            if part.strip():
                sentences.append(f"{message.sender_name}: {part.strip()}")
    return " ".join(sentences[-max_sentences:])


def analyze_messages(messages: list[StoredMessage], query: str) -> ToolResult:
    """Answer `query` from the messages sharing its content words."""
    terms = _content_terms(query)
    relevant = [
        message
        for message in messages
        if terms & _content_terms(message.text)
    ]
    if not relevant:
        return ToolResult(
            success=True,
            data={"answer": "Nothing in this conversation mentions that.", "relevant_messages": []},
            instruction_for_planner="No relevant messages were found.",
            confidence=0.2,
        )
    return ToolResult(
        success=True,
        data={
            "answer": " ".join(message.text for message in relevant),
            "relevant_messages": [f"{m.sender_name}: {m.text}" for m in relevant],
            "message_count_analyzed": len(messages),
        },
        instruction_for_planner=f"Found {len(relevant)} relevant messages.",
        confidence=min(0.5 + 0.1 * len(relevant), 0.95),
    )


def contact_confidence(contact: Contact, query: str) -> float:
    """Exact 0.95, prefix 0.8, substring 0.6, similar word 0.4; +0.1 if recent."""
    value = contact.display_name.strip().lower()
    needle = query.strip().lower()
    if value == needle:
        score = 0.95
    elif value.startswith(needle):
        score = 0.8
    elif needle in value:
        score = 0.6
    elif _similar_word(value, needle):
        score = 0.4
    else:
        return 0.0
    if contact.is_recent:
        score = min(score + 0.1, 1.0)
    return round(score, 2)


def needs_contact_clarification(contacts: list[dict[str, Any]]) -> bool:
    confidences = [float(item["confidence"]) for item in contacts]
    if len(confidences) > 1:
        return confidences[0] - confidences[1] < 0.2
    return confidences[0] < 0.6


def _similar_word(value: str, needle: str) -> bool:
    if len(needle) < 3:
        return False
    return any(
        len(word) >= 3 and difflib.SequenceMatcher(None, word, needle).ratio() > 0.6
        for word in value.split()
    )


def _content_terms(text: str) -> set[str]:
    return {
        token.lower()
        for token in _WORD.findall(text)
        if token.lower() not in _STOPWORDS
    }


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
