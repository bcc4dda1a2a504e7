"""
Tests for the lifecycle reducer.

These tests verify that:
1. Each verb moves items and collections through the right statuses
2. Temporary keys are remapped everywhere on create success
3. Errors are captured as data, never raised
4. Missing keys are tolerated with a diagnostic
5. Hooks run in registration order around the primary transition
"""

from datetime import datetime, timezone

import pytest

from chora_resources.config import ActionOptions, ResourceConfig
from chora_resources.events import Event, Verb
from chora_resources.models import (
    EMPTY_STATE,
    Collection,
    InvalidEvent,
    Item,
    ResourceState,
    ResourceStatus,
    StatusType,
)
from chora_resources.reducer import ResourceReducer, apply, compose


SYNCED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def event(verb: Verb, status=None, **kwargs) -> Event:
    """Helper to create events for the users resource."""
    return Event(resource="users", verb=verb, status=status, **kwargs)


def synced_item(key: str, **values) -> Item:
    """Helper to create an item confirmed by the server."""
    return Item(key=key, values=values, status=ResourceStatus.success(SYNCED))


@pytest.fixture
def loaded_state():
    """A state holding user 1 in the default collection, selected."""
    return ResourceState(
        items={"1": synced_item("1", id=1, name="Bob")},
        collections={"": Collection(key="", positions=["1"], status=ResourceStatus.success(SYNCED))},
        selection_map=frozenset({"1"}),
    )


class TestNew:
    """Test starting new items."""

    def test_new_item(self):
        """Test that new puts an item under its temporary key."""
        state = apply(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="temp", values={"name": "a"}))

        assert state.items["temp"].status.type == StatusType.NEW
        assert state.items["temp"].values == {"name": "a"}
        assert state.new_item_key == "temp"

    def test_new_item_in_collections(self):
        """Test that new can place the temporary key in collections."""
        state = apply(
            EMPTY_STATE,
            event(Verb.NEW, StatusType.NEW, key="temp", collection_keys=("", "active=true")),
        )

        assert state.collections[""].positions == ["temp"]
        assert state.collections["active=true"].positions == ["temp"]

    def test_new_while_pending_warns_and_replaces(self, caplog):
        """Test a second new discards the unsaved first one."""
        state = apply(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="first", collection_keys=("",)))
        state = apply(state, event(Verb.NEW, StatusType.NEW, key="second"))

        assert "ConsistencyWarning" in caplog.text
        assert "first" not in state.items
        assert state.collections[""].positions == []
        assert state.new_item_key == "second"

    def test_new_while_creating_keeps_item_quietly(self, caplog):
        """Test starting another item while the first is being created."""
        state = apply(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="first", collection_keys=("",)))
        state = apply(state, event(Verb.CREATE, StatusType.CREATING, key="first", values={"name": "a"}))
        state = apply(state, event(Verb.NEW, StatusType.NEW, key="second"))

        assert "ConsistencyWarning" not in caplog.text
        assert state.items["first"].status.type == StatusType.CREATING
        assert state.collections[""].positions == ["first"]
        assert state.new_item_key == "second"

        state = apply(state, event(Verb.CREATE, StatusType.SUCCESS, key="1", temp_key="first", values={"id": 1}))
        assert state.new_item_key == "second"
        assert state.collections[""].positions == ["1"]

    def test_clear_new(self):
        """Test clearing the pending new item."""
        state = apply(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="temp", collection_keys=("",)))
        state = apply(state, event(Verb.CLEAR_NEW))

        assert state.items == {}
        assert state.collections[""].positions == []
        assert state.new_item_key is None

    def test_edit_new(self):
        """Test editing the pending new item keeps it NEW."""
        state = apply(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="temp", values={"name": "a"}))
        state = apply(state, event(Verb.EDIT_NEW, StatusType.EDITING, values={"email": "a@b.c"}))

        assert state.items["temp"].values == {"name": "a", "email": "a@b.c"}
        assert state.items["temp"].status.type == StatusType.NEW

    def test_edit_new_without_pending_item(self, caplog):
        """Test edit_new with nothing pending is a logged no-op."""
        state = apply(EMPTY_STATE, event(Verb.EDIT_NEW, StatusType.EDITING, values={"a": 1}))

        assert state is EMPTY_STATE
        assert "ConsistencyWarning" in caplog.text


class TestCreate:
    """Test creating items and remapping temporary keys."""

    def _pending_state(self):
        state = apply(
            EMPTY_STATE,
            event(Verb.NEW, StatusType.NEW, key="temp", values={"name": "a"}, collection_keys=("",)),
        )
        return apply(state, event(Verb.SELECT_ANOTHER, key="temp"))

    def test_creating(self):
        """Test the optimistic create."""
        state = self._pending_state()
        state = apply(state, event(Verb.CREATE, StatusType.CREATING, key="temp", values={"name": "a"}))

        assert state.items["temp"].status.type == StatusType.CREATING
        assert state.items["temp"].values == {"name": "a"}

    def test_success_remaps_temporary_key(self):
        """Test the temporary key is replaced everywhere it was referenced."""
        state = self._pending_state()
        state = apply(state, event(Verb.CREATE, StatusType.CREATING, key="temp", values={"name": "a"}))
        state = apply(
            state,
            event(Verb.CREATE, StatusType.SUCCESS, key="7", temp_key="temp", values={"id": 7, "name": "a"}),
        )

        assert "temp" not in state.items
        assert all("temp" not in c.positions for c in state.collections.values())
        assert "temp" not in state.selection_map

        assert state.items["7"].values == {"id": 7, "name": "a"}
        assert state.items["7"].status.type == StatusType.SUCCESS
        assert state.items["7"].status.synced_at is not None
        assert state.collections[""].positions == ["7"]
        assert state.selection_map == frozenset({"7"})
        assert state.new_item_key is None

    def test_success_keeps_unrelated_new_item_key(self):
        """Test new_item_key is only cleared when it was the created item."""
        state = apply(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="draft"))
        state = apply(state, event(Verb.CREATE, StatusType.CREATING, key="other", values={"name": "b"}))
        state = apply(
            state,
            event(Verb.CREATE, StatusType.SUCCESS, key="8", temp_key="other", values={"id": 8}),
        )

        assert state.new_item_key == "draft"
        assert state.items["8"].values == {"name": "b", "id": 8}

    def test_error_retains_temporary_item(self):
        """Test a failed create keeps values under the temporary key."""
        state = self._pending_state()
        state = apply(state, event(Verb.CREATE, StatusType.CREATING, key="temp", values={"name": "a"}))
        state = apply(
            state,
            event(Verb.CREATE, StatusType.ERROR, key="temp", http_code=422, error={"name": "taken"}),
        )

        item = state.items["temp"]
        assert item.values == {"name": "a"}
        assert item.status.type == StatusType.ERROR
        assert item.status.http_code == 422
        assert item.status.error == {"name": "taken"}


class TestUpdate:
    """Test updating items."""

    def test_updating_merges_optimistically(self, loaded_state):
        """Test the optimistic update."""
        state = apply(loaded_state, event(Verb.UPDATE, StatusType.UPDATING, key="1", values={"name": "Robert"}))

        assert state.items["1"].values == {"id": 1, "name": "Robert"}
        assert state.items["1"].status.type == StatusType.UPDATING

    def test_success_merges_server_values(self, loaded_state):
        """Test the server response is merged in."""
        state = apply(loaded_state, event(Verb.UPDATE, StatusType.UPDATING, key="1", values={"name": "Robert"}))
        success = event(
            Verb.UPDATE, StatusType.SUCCESS, key="1", values={"name": "Robert", "updated": "now"}
        )
        state = apply(state, success)

        assert state.items["1"].values == {"id": 1, "name": "Robert", "updated": "now"}
        assert state.items["1"].status.type == StatusType.SUCCESS
        assert state.items["1"].status.synced_at == success.timestamp

    def test_success_is_idempotent(self, loaded_state):
        """Test applying the same success twice gives the same values."""
        success = event(Verb.UPDATE, StatusType.SUCCESS, key="1", values={"name": "Robert"})

        once = apply(loaded_state, success)
        twice = apply(once, success)

        assert once.items["1"].values == twice.items["1"].values

    def test_success_clears_previous_error(self, loaded_state):
        """Test a retried update drops the old error detail."""
        state = apply(
            loaded_state,
            event(Verb.UPDATE, StatusType.ERROR, key="1", http_code=500, error={"message": "boom"}),
        )
        state = apply(state, event(Verb.UPDATE, StatusType.SUCCESS, key="1", values={"name": "Bob"}))

        assert state.items["1"].status.type == StatusType.SUCCESS
        assert state.items["1"].status.error is None
        assert state.items["1"].status.http_code is None

    def test_error_reverts_to_previous_values(self, loaded_state):
        """Test a failed update restores the values it was issued against."""
        previous = dict(loaded_state.items["1"].values)
        state = apply(
            loaded_state,
            event(Verb.UPDATE, StatusType.UPDATING, key="1", values={"name": "Robert"}, previous_values=previous),
        )
        state = apply(
            state,
            event(
                Verb.UPDATE, StatusType.ERROR, key="1",
                http_code=409, error={"message": "conflict"}, previous_values=previous,
            ),
        )

        assert state.items["1"].values == {"id": 1, "name": "Bob"}
        assert state.items["1"].status.type == StatusType.ERROR
        assert state.items["1"].status.http_code == 409

    def test_error_without_previous_values_keeps_values(self, loaded_state):
        """Test values stay as last applied when no snapshot is carried."""
        state = apply(loaded_state, event(Verb.UPDATE, StatusType.UPDATING, key="1", values={"name": "Robert"}))
        state = apply(state, event(Verb.UPDATE, StatusType.ERROR, key="1", error={"message": "x"}))

        assert state.items["1"].values["name"] == "Robert"

    def test_update_unknown_key_synthesizes_placeholder(self, caplog):
        """Test an unknown key is tolerated."""
        state = apply(EMPTY_STATE, event(Verb.UPDATE, StatusType.ERROR, key="9", error={"message": "x"}))

        assert state.items["9"].status.type == StatusType.ERROR
        assert state.items["9"].values == {}
        assert "ConsistencyWarning" in caplog.text


class TestDestroy:
    """Test destroying items."""

    def test_destroying(self, loaded_state):
        """Test the optimistic destroy keeps the item."""
        state = apply(loaded_state, event(Verb.DESTROY, StatusType.DESTROYING, key="1"))

        assert state.items["1"].status.type == StatusType.DESTROYING
        assert state.items["1"].values == {"id": 1, "name": "Bob"}

    def test_success_removes_every_reference(self, loaded_state):
        """Test confirmed destroy removes item, positions and selection."""
        state = apply(loaded_state, event(Verb.DESTROY, StatusType.DESTROYING, key="1"))
        state = apply(state, event(Verb.DESTROY, StatusType.SUCCESS, key="1"))

        assert "1" not in state.items
        assert state.collections[""].positions == []
        assert state.selection_map == frozenset()

    def test_error_retains_data(self, loaded_state):
        """Test a failed destroy never removes the item."""
        state = apply(loaded_state, event(Verb.DESTROY, StatusType.DESTROYING, key="1"))
        state = apply(
            state,
            event(Verb.DESTROY, StatusType.DESTROY_ERROR, key="1", http_code=403, error={"message": "no"}),
        )

        item = state.items["1"]
        assert item.values == {"id": 1, "name": "Bob"}
        assert item.status.type == StatusType.DESTROY_ERROR
        assert item.status.error == {"message": "no"}
        assert state.collections[""].positions == ["1"]


class TestIndex:
    """Test fetching collections."""

    def test_fetching_creates_collection(self):
        """Test the optimistic fetch."""
        state = apply(EMPTY_STATE, event(Verb.INDEX, StatusType.FETCHING, collection_key="page=1"))

        assert state.collections["page=1"].status.type == StatusType.FETCHING
        assert state.collections["page=1"].positions == []

    def test_success_upserts_items(self, loaded_state):
        """Test returned items are merged and positions replaced."""
        state = apply(
            loaded_state,
            event(
                Verb.INDEX, StatusType.SUCCESS, collection_key="",
                items=(("2", {"id": 2, "name": "Jane"}), ("1", {"id": 1, "email": "bob@x"})),
            ),
        )

        assert state.collections[""].positions == ["2", "1"]
        assert state.collections[""].status.type == StatusType.SUCCESS
        assert state.items["1"].values == {"id": 1, "name": "Bob", "email": "bob@x"}
        assert state.items["2"].status.type == StatusType.SUCCESS

    def test_second_success_overwrites_positions(self):
        """Test a later settlement replaces the positions."""
        state = apply(
            EMPTY_STATE,
            event(Verb.INDEX, StatusType.SUCCESS, collection_key="page=1", items=(("1", {"id": 1}),)),
        )
        state = apply(
            state,
            event(Verb.INDEX, StatusType.SUCCESS, collection_key="page=1", items=(("2", {"id": 2}),)),
        )

        assert state.collections["page=1"].positions == ["2"]
        assert set(state.items) == {"1", "2"}

    def test_duplicate_positions_collapse(self):
        """Test positions never hold duplicates."""
        state = apply(
            EMPTY_STATE,
            event(
                Verb.INDEX, StatusType.SUCCESS, collection_key="",
                items=(("1", {"id": 1}), ("1", {"id": 1})),
            ),
        )

        assert state.collections[""].positions == ["1"]

    def test_error_keeps_positions(self, loaded_state):
        """Test a failed fetch records the error only."""
        state = apply(
            loaded_state,
            event(Verb.INDEX, StatusType.ERROR, collection_key="", http_code=500, error={"message": "down"}),
        )

        assert state.collections[""].positions == ["1"]
        assert state.collections[""].status.type == StatusType.ERROR
        assert state.collections[""].status.http_code == 500


class TestShow:
    """Test fetching single items."""

    def test_fetching_then_success(self):
        """Test show moves an item from FETCHING to SUCCESS."""
        state = apply(EMPTY_STATE, event(Verb.SHOW, StatusType.FETCHING, key="1"))
        assert state.items["1"].status.type == StatusType.FETCHING

        state = apply(state, event(Verb.SHOW, StatusType.SUCCESS, key="1", values={"id": 1}))
        assert state.items["1"].status.type == StatusType.SUCCESS
        assert state.items["1"].values == {"id": 1}

    def test_error(self):
        """Test show errors are recorded on the item."""
        state = apply(EMPTY_STATE, event(Verb.SHOW, StatusType.FETCHING, key="1"))
        state = apply(state, event(Verb.SHOW, StatusType.ERROR, key="1", http_code=404, error={"message": "?"}))

        assert state.items["1"].status.type == StatusType.ERROR
        assert state.items["1"].status.http_code == 404


class TestEdit:
    """Test local edits."""

    def test_edit_keeps_status(self, loaded_state):
        """Test edit merges values and keeps the status."""
        state = apply(loaded_state, event(Verb.EDIT, StatusType.EDITING, key="1", values={"name": "Bobby"}))

        assert state.items["1"].values == {"id": 1, "name": "Bobby"}
        assert state.items["1"].status.type == StatusType.SUCCESS

    def test_edit_unknown_key(self, caplog):
        """Test editing a missing item creates an EDITING placeholder."""
        state = apply(EMPTY_STATE, event(Verb.EDIT, StatusType.EDITING, key="5", values={"name": "x"}))

        assert state.items["5"].status.type == StatusType.EDITING
        assert state.items["5"].values == {"name": "x"}
        assert "ConsistencyWarning" in caplog.text


class TestSelection:
    """Test selection transitions."""

    def test_select_replaces_selection(self, loaded_state):
        """Test select keeps a single key."""
        state = loaded_state.with_item(synced_item("2", id=2))
        state = apply(state, event(Verb.SELECT, key="2"))

        assert state.selection_map == frozenset({"2"})

    def test_select_another_and_deselect(self, loaded_state):
        """Test adding to and removing from the selection."""
        state = loaded_state.with_item(synced_item("2", id=2))
        state = apply(state, event(Verb.SELECT_ANOTHER, key="2"))
        assert state.selection_map == frozenset({"1", "2"})

        state = apply(state, event(Verb.DESELECT, key="1"))
        assert state.selection_map == frozenset({"2"})

    def test_clear_selected(self, loaded_state):
        """Test emptying the selection."""
        state = apply(loaded_state, event(Verb.CLEAR_SELECTED))
        assert state.selection_map == frozenset()

    def test_select_unknown_key_is_tolerated(self, caplog):
        """Test a dangling selection is kept and reported."""
        state = apply(EMPTY_STATE, event(Verb.SELECT, key="404"))

        assert state.selection_map == frozenset({"404"})
        assert "ConsistencyWarning" in caplog.text

    def test_clear(self, loaded_state):
        """Test clear resets the whole state."""
        assert apply(loaded_state, event(Verb.CLEAR)) == EMPTY_STATE


class TestSnapshots:
    """Test copy-on-write behaviour."""

    def test_apply_does_not_mutate_input(self, loaded_state):
        """Test the previous snapshot is left untouched."""
        before = loaded_state.to_dict()

        apply(loaded_state, event(Verb.UPDATE, StatusType.UPDATING, key="1", values={"name": "X"}))
        apply(loaded_state, event(Verb.DESTROY, StatusType.SUCCESS, key="1"))

        assert loaded_state.to_dict() == before

    def test_unhandled_phase_returns_same_state(self, loaded_state):
        """Test a phase the verb ignores is an identity."""
        progress = event(Verb.UPDATE, StatusType.PROGRESS, key="1", loaded=1, total=2)
        assert apply(loaded_state, progress) is loaded_state


class TestResourceReducer:
    """Test the per-resource reducer and its hook pipeline."""

    def test_other_resource_is_identity(self, loaded_state):
        """Test events for another resource return the same object."""
        reducer = ResourceReducer(ResourceConfig(name="users"))
        other = Event(resource="posts", verb=Verb.DESTROY, status=StatusType.SUCCESS, key="1")

        assert reducer(loaded_state, other) is loaded_state

    def test_disabled_verb_is_identity(self, loaded_state):
        """Test events for verbs the resource does not enable are ignored."""
        reducer = ResourceReducer(ResourceConfig(name="users", actions=["index"]))

        assert reducer(loaded_state, event(Verb.DESTROY, StatusType.SUCCESS, key="1")) is loaded_state

    def test_none_state_starts_empty(self):
        """Test a missing state is treated as the empty state."""
        reducer = ResourceReducer(ResourceConfig(name="users"))
        state = reducer(None, event(Verb.NEW, StatusType.NEW, key="t"))

        assert state.new_item_key == "t"

    def test_hooks_run_in_registration_order(self):
        """Test before/after reducers sandwich the primary transition."""
        calls = []

        def hook(name):
            def step(state, evt):
                calls.append((name, "t" in state.items))
                return state
            return step

        config = ResourceConfig(
            name="users",
            before_reducers=(hook("resource-before"),),
            after_reducers=(hook("resource-after"),),
            actions={
                "new": ActionOptions(
                    before_reducers=(hook("action-before"),),
                    after_reducers=(hook("action-after"),),
                ),
            },
        )
        ResourceReducer(config)(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="t"))

        assert calls == [
            ("resource-before", False),
            ("action-before", False),
            ("resource-after", True),
            ("action-after", True),
        ]

    def test_custom_reducer_replaces_primary(self):
        """Test an action can override the standard reducer."""
        marker = ResourceState(new_item_key="custom")
        config = ResourceConfig(
            name="users",
            actions={"new": ActionOptions(reducer=lambda state, evt: marker)},
        )

        assert ResourceReducer(config)(EMPTY_STATE, event(Verb.NEW, StatusType.NEW, key="t")) is marker

    def test_compose_without_hooks_returns_primary(self):
        """Test compose does not wrap a lone reducer."""
        assert compose([], apply) is apply


class TestEventValidation:
    """Test malformed events are rejected at construction."""

    def test_error_requires_detail(self):
        """Test ERROR events must carry an error."""
        with pytest.raises(InvalidEvent):
            event(Verb.UPDATE, StatusType.ERROR, key="1")

    def test_progress_requires_loaded(self):
        """Test PROGRESS events must carry loaded."""
        with pytest.raises(InvalidEvent):
            event(Verb.CREATE, StatusType.PROGRESS, key="1")

    def test_index_requires_collection_key(self):
        """Test index events must name their collection."""
        with pytest.raises(InvalidEvent):
            event(Verb.INDEX, StatusType.FETCHING)

    def test_resource_required(self):
        """Test events must name their resource."""
        with pytest.raises(InvalidEvent):
            Event(resource="", verb=Verb.CLEAR)
