"""FastAPI entrypoint for command/trace/metrics endpoints."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from chain_agent.agent.engine import ToolChainEngine
from chain_agent.agent.fallback import DeterministicPlanner
from chain_agent.agent.planner import LLMPlanner, Planner
from chain_agent.agent.registry import ToolRegistry
from chain_agent.agent.tools import register_builtin_tools
from chain_agent.config import ChainConfig, StoreConfig
from chain_agent.obs.tracing import TraceStore
from chain_agent.store import ConversationStore

logging.basicConfig(
    level=os.getenv("CHAIN_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0.1)


class CommandRequest(BaseModel):
    command: str = Field(min_length=1)
    requester_id: str = Field(min_length=1)
    conversation_id: str | None = None


class ConversationRequest(BaseModel):
    participants: dict[str, str] = Field(min_length=1)
    title: str | None = None
    conversation_id: str | None = None


class MessageRequest(BaseModel):
    sender_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    sent_at: float | None = None


app = FastAPI(title="Tool Chain Agent", version="0.1.0")

_config = ChainConfig.from_env()
_store_config = StoreConfig(sqlite_path=os.getenv("CHAIN_SQLITE_PATH", "chain_agent.db"))
_store = ConversationStore(_store_config.sqlite_path)
_registry = ToolRegistry()
register_builtin_tools(_registry, _store, config=_store_config)

_trace_store = TraceStore()
_llm = _create_llm()
_planner: Planner = (
    LLMPlanner(llm=_llm, tool_registry=_registry)
    if _llm is not None
    else DeterministicPlanner()
)
_engine = ToolChainEngine(
    planner=_planner,
    tool_registry=_registry,
    trace_store=_trace_store,
    config=_config,
)
logger.info(
    "Tool chain engine ready (planner=%s, max_chain_length=%d)",
    "langchain" if _llm is not None else "deterministic",
    _config.max_chain_length,
)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "planner_mode": "langchain" if _llm is not None else "deterministic",
        "tool_count": len(_registry.specs()),
    }


@app.get("/tools")
def tools() -> dict[str, Any]:
    return {
        "items": [
            {
                "name": spec.name,
                "description": spec.description,
                "side_effect": spec.side_effect.value,
                "fan_out": spec.is_fan_out,
                "parameters": spec.args_schema.model_json_schema(),
            }
            for spec in _registry.specs()
        ]
    }


@app.post("/command")
def command(request: CommandRequest) -> dict[str, Any]:
    try:
        outcome = _engine.invoke(
            request.command,
            requester_id=request.requester_id,
            conversation_id=request.conversation_id,
        )
    except Exception as exc:
        logger.exception("Unhandled error for command")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return outcome.as_payload()


@app.post("/conversations")
def create_conversation(request: ConversationRequest) -> dict[str, Any]:
    try:
        conversation_id = _store.create_conversation(
            request.participants,
            title=request.title,
            conversation_id=request.conversation_id,
        )
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"conversation_id": conversation_id}


@app.post("/conversations/{conversation_id}/messages")
def add_message(conversation_id: str, request: MessageRequest) -> dict[str, Any]:
    if not _store.is_participant(conversation_id, request.sender_id):
        raise HTTPException(status_code=404, detail="Conversation or sender not found")
    message_id = _store.add_message(
        conversation_id, request.sender_id, request.text, sent_at=request.sent_at
    )
    return {"message_id": message_id}


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()
