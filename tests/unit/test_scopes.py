"""
Unit tests for scope registration, defaults validation and resolution order.
"""
import pytest
from sqlalchemy import select

from sqlrepo import (
    CallContext,
    ScopeDefaults,
    ScopeDefinition,
    ScopeOperation,
    ScopeRegistry,
    ValidationError,
    get_scope_data,
    has_scope_data,
    resolve_scope_state,
    scope_by_field,
    scope_data_snapshot,
    with_scope_data,
    with_scopes,
    with_select_scopes,
    with_update_scopes,
    without_default_scopes,
)
from sqlrepo.criteria import apply_criteria
from tests.models import Account


def _noop(ctx):
    return []


def _definition():
    return ScopeDefinition(select=_noop, update=_noop, insert=_noop, delete=_noop)


class TestCallContext:
    def test_derivation_does_not_mutate_parent(self):
        base = CallContext()
        child = with_select_scopes(base, "tenant")
        assert base.select == ()
        assert child.select == ("tenant",)

    def test_scope_data_round_trip(self):
        ctx = with_scope_data(None, "tenant", "abc")
        assert has_scope_data(ctx, "tenant")
        assert get_scope_data(ctx, "tenant") == "abc"
        assert get_scope_data(ctx, "missing", "fallback") == "fallback"
        assert scope_data_snapshot(ctx) == {"tenant": "abc"}

    def test_scope_data_is_read_only(self):
        ctx = with_scope_data(None, "tenant", "abc")
        with pytest.raises(TypeError):
            ctx.data["tenant"] = "other"

    def test_none_context_behaves_like_background(self):
        assert not has_scope_data(None, "tenant")
        assert scope_data_snapshot(None) == {}


class TestResolveScopeState:
    def test_defaults_then_context_without_duplicates(self):
        defaults = ScopeDefaults(select=["a"])
        ctx = with_select_scopes(None, "b", "a")
        state = resolve_scope_state(ctx, defaults, ScopeOperation.SELECT)
        assert state.names == ["a", "b"]

    def test_all_names_precede_operation_names(self):
        defaults = ScopeDefaults(all=["global"], update=["upd"])
        ctx = with_update_scopes(with_scopes(None, "ctx-all"), "ctx-upd")
        state = resolve_scope_state(ctx, defaults, ScopeOperation.UPDATE)
        assert state.names == ["global", "upd", "ctx-all", "ctx-upd"]

    def test_disabled_defaults_are_skipped(self):
        defaults = ScopeDefaults(all=["global"], select=["a"])
        ctx = with_select_scopes(without_default_scopes(None), "b")
        state = resolve_scope_state(ctx, defaults, ScopeOperation.SELECT)
        assert state.names == ["b"]
        assert state.use_defaults is False

    def test_blank_names_are_dropped(self):
        ctx = with_select_scopes(None, "", "  ", "x")
        state = resolve_scope_state(ctx, None, ScopeOperation.SELECT)
        assert state.names == ["x"]

    def test_other_operations_not_included(self):
        defaults = ScopeDefaults(delete=["d"])
        state = resolve_scope_state(None, defaults, ScopeOperation.SELECT)
        assert state.names == []


class TestScopeRegistry:
    def test_unknown_defaults_are_all_listed(self):
        registry = ScopeRegistry()
        registry.register("a", _definition())
        with pytest.raises(ValidationError) as exc:
            registry.set_defaults(ScopeDefaults(all=["zeta"], select=["a", "alpha"]))
        assert [fe.field for fe in exc.value.field_errors] == ["alpha", "zeta"]
        assert registry.get_defaults() == ScopeDefaults()

    def test_get_defaults_returns_copy(self):
        registry = ScopeRegistry()
        registry.register("a", _definition())
        registry.set_defaults(ScopeDefaults(select=["a"]))
        copy = registry.get_defaults()
        copy.select.append("mutated")
        assert registry.get_defaults().select == ["a"]

    def test_blank_name_is_ignored(self):
        registry = ScopeRegistry()
        registry.register("  ", _definition())
        assert not registry.is_registered("  ")

    def test_register_replaces_existing_definition(self):
        registry = ScopeRegistry()
        registry.register("a", ScopeDefinition(select=lambda ctx: ["first"]))
        registry.register("a", ScopeDefinition(select=lambda ctx: ["second"]))
        assert registry.resolve(with_select_scopes(None, "a"), ScopeOperation.SELECT) == ["second"]

    def test_resolve_concatenates_in_order_and_skips_unknown(self):
        registry = ScopeRegistry()
        registry.register("a", ScopeDefinition(select=lambda ctx: ["a1", "a2"]))
        registry.register("b", ScopeDefinition(select=lambda ctx: ["b1"]))
        ctx = with_select_scopes(None, "b", "ghost", "a")
        assert registry.resolve(ctx, ScopeOperation.SELECT) == ["b1", "a1", "a2"]

    def test_resolve_ignores_missing_producer(self):
        registry = ScopeRegistry()
        registry.register("a", ScopeDefinition(select=lambda ctx: ["a1"]))
        assert registry.resolve(with_scopes(None, "a"), ScopeOperation.DELETE) == []

    def test_reset_clears_everything(self):
        registry = ScopeRegistry()
        registry.register("a", _definition())
        registry.set_defaults(ScopeDefaults(all=["a"]))
        registry.reset()
        assert not registry.is_registered("a")
        assert registry.get_defaults() == ScopeDefaults()


class TestScopeByField:
    def test_fails_closed_without_data(self):
        definition = scope_by_field("tenant", "company_id")
        stmt = apply_criteria(select(Account), definition.select(CallContext()))
        assert "false" in str(stmt).lower() or "0 = 1" in str(stmt) or "1 != 1" in str(stmt)

    def test_filters_column_with_data(self):
        definition = scope_by_field("tenant", "company_id")
        ctx = with_scope_data(None, "tenant", "abc")
        stmt = apply_criteria(select(Account), definition.select(ctx))
        assert "accounts.company_id = " in str(stmt)

    def test_insert_has_no_producer(self):
        assert scope_by_field("tenant", "company_id").insert is None
