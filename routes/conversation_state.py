import logging
import time
from typing import Any, Dict, List, Optional, Set, TypedDict

from langchain_core.runnables import RunnableLambda
from langgraph.graph import END, StateGraph
from pydantic import BaseModel, Field

from routes import database

logger = logging.getLogger(__name__)

MAX_MESSAGES = 5
MAX_EDITS = 3
MAX_MAJOR_CHANGES = 2


class EditRecord(BaseModel):
    timestamp: int
    filesCreated: List[str] = Field(default_factory=list)
    filesUpdated: List[str] = Field(default_factory=list)
    packages: List[str] = Field(default_factory=list)
    summary: str = ""


class ProjectEvolution(BaseModel):
    majorChanges: List[Any] = Field(default_factory=list)


class Context(BaseModel):
    messages: List[Any] = Field(default_factory=list)
    edits: List[EditRecord] = Field(default_factory=list)
    createdFiles: List[str] = Field(default_factory=list)
    projectEvolution: ProjectEvolution = Field(default_factory=ProjectEvolution)
    userPreferences: Dict[str, Any] = Field(default_factory=dict)
    currentTopic: Optional[str] = None


class ConversationStateModel(BaseModel):
    conversationId: str
    startedAt: int
    lastUpdated: int
    context: Context


def _now() -> int:
    return int(time.time() * 1000)


def load_state() -> Optional[ConversationStateModel]:
    raw = database.get_conversation_state()
    return ConversationStateModel.model_validate(raw) if raw else None


def save_state(state: Optional[ConversationStateModel]) -> None:
    database.set_conversation_state(state.model_dump() if state else None)


def new_state() -> ConversationStateModel:
    now = _now()
    return ConversationStateModel(conversationId=f"conv-{now}", startedAt=now, lastUpdated=now, context=Context())


def known_files() -> Set[str]:
    """Paths earlier edits in this conversation already created."""
    state = load_state()
    return set(state.context.createdFiles) if state else set()


def record_edit(files_created: List[str], files_updated: List[str], packages: List[str], summary: str = "") -> None:
    state = load_state() or new_state()
    ctx = state.context
    ctx.edits.append(EditRecord(
        timestamp=_now(),
        filesCreated=list(files_created),
        filesUpdated=list(files_updated),
        packages=list(packages),
        summary=summary[:500],
    ))
    ctx.edits = ctx.edits[-MAX_EDITS:]
    # created paths survive edit trimming
    ctx.createdFiles = list(dict.fromkeys(ctx.createdFiles + list(files_created)))
    state.lastUpdated = _now()
    save_state(state)


class GraphState(TypedDict, total=False):
    payload: Dict[str, Any]
    response: Dict[str, Any]


def _get_compute(_: Dict[str, Any]) -> Dict[str, Any]:
    state = load_state()
    if state is None:
        return {"success": True, "state": None, "message": "No active conversation"}
    return {"success": True, "state": state.model_dump()}


def _post_compute(payload: Dict[str, Any]) -> Dict[str, Any]:
    action = payload.get("action")
    data = payload.get("data") or {}
    state = load_state()

    if action == "reset":
        state = new_state()
        message = "Conversation state reset"
    elif action == "clear-old":
        if state is None:
            return {"success": False, "error": "No active conversation to clear"}
        ctx = state.context
        ctx.messages = ctx.messages[-MAX_MESSAGES:]
        ctx.edits = ctx.edits[-MAX_EDITS:]
        ctx.projectEvolution.majorChanges = ctx.projectEvolution.majorChanges[-MAX_MAJOR_CHANGES:]
        message = "Old conversation data cleared"
    elif action == "update":
        if state is None:
            return {"success": False, "error": "No active conversation to update"}
        if "currentTopic" in data:
            state.context.currentTopic = data["currentTopic"]
        if "userPreferences" in data:
            state.context.userPreferences = {**state.context.userPreferences, **data["userPreferences"]}
        if "message" in data:
            state.context.messages.append(data["message"])
        state.lastUpdated = _now()
        message = "Conversation state updated"
    else:
        return {"success": False, "error": 'Invalid action. Use "reset", "update" or "clear-old"'}

    save_state(state)
    logger.info("[conversation-state] %s", message)
    return {"success": True, "message": message, "state": state.model_dump()}


def _delete_compute(_: Dict[str, Any]) -> Dict[str, Any]:
    save_state(None)
    logger.info("[conversation-state] Cleared conversation state")
    return {"success": True, "message": "Conversation state cleared"}


def _compile(processor: RunnableLambda):
    def _node(state: GraphState) -> GraphState:
        return {"response": processor.invoke(state.get("payload", {}))}

    graph = StateGraph(GraphState)
    graph.add_node("process", _node)
    graph.set_entry_point("process")
    graph.add_edge("process", END)
    return graph.compile()


_get_graph = _compile(RunnableLambda(_get_compute))
_post_graph = _compile(RunnableLambda(_post_compute))
_delete_graph = _compile(RunnableLambda(_delete_compute))


def GET() -> Dict[str, Any]:
    return _get_graph.invoke({"payload": {}})["response"]


def POST(body: Dict[str, Any]) -> Dict[str, Any]:
    return _post_graph.invoke({"payload": body})["response"]


def DELETE() -> Dict[str, Any]:
    return _delete_graph.invoke({"payload": {}})["response"]
