"""Tests for the persisted conversation state."""

from routes import conversation_state


class TestConversationState:
    """GET / POST / DELETE handlers and edit history."""

    def test_get_without_state(self):
        result = conversation_state.GET()

        assert result["success"] is True
        assert result["state"] is None

    def test_reset_then_update(self):
        conversation_state.POST({"action": "reset"})

        result = conversation_state.POST({
            "action": "update",
            "data": {"currentTopic": "landing page", "userPreferences": {"theme": "dark"},
                     "message": {"role": "user", "content": "hi"}},
        })

        context = result["state"]["context"]
        assert context["currentTopic"] == "landing page"
        assert context["userPreferences"] == {"theme": "dark"}
        assert context["messages"] == [{"role": "user", "content": "hi"}]
        assert conversation_state.GET()["state"]["context"]["currentTopic"] == "landing page"

    def test_update_without_state_fails(self):
        result = conversation_state.POST({"action": "update", "data": {}})

        assert result["success"] is False

    def test_invalid_action(self):
        assert conversation_state.POST({"action": "explode"})["success"] is False

    def test_clear_old_trims_history(self):
        conversation_state.POST({"action": "reset"})
        for i in range(8):
            conversation_state.POST({"action": "update", "data": {"message": {"n": i}}})

        result = conversation_state.POST({"action": "clear-old"})

        messages = result["state"]["context"]["messages"]
        assert [m["n"] for m in messages] == [3, 4, 5, 6, 7]

    def test_delete(self):
        conversation_state.POST({"action": "reset"})

        assert conversation_state.DELETE()["success"] is True
        assert conversation_state.GET()["state"] is None

    def test_record_edit_tracks_created_files(self):
        conversation_state.record_edit(["src/A.jsx"], [], ["axios"], summary="first")
        conversation_state.record_edit(["src/B.jsx"], ["src/A.jsx"], [], summary="second")

        assert conversation_state.known_files() == {"src/A.jsx", "src/B.jsx"}
        edits = conversation_state.GET()["state"]["context"]["edits"]
        assert [e["summary"] for e in edits] == ["first", "second"]

    def test_edit_history_is_bounded(self):
        for i in range(6):
            conversation_state.record_edit([f"src/{i}.jsx"], [], [])

        state = conversation_state.GET()["state"]
        assert len(state["context"]["edits"]) == conversation_state.MAX_EDITS
        assert len(state["context"]["createdFiles"]) == 6
