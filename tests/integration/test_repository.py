"""
Integration tests for the scoped repository against a real database.

Runs against in-memory SQLite by default; set SQLREPO_TEST_DB to point the
suite at another database.
"""
import logging
import threading
import uuid

import pytest
from sqlalchemy import event
from sqlalchemy.orm import Session

from sqlrepo import (
    DuplicateKeyError,
    ExpectedCountViolationError,
    IdentifierOption,
    ModelHandlers,
    PatchPrimaryKeyNotAllowedError,
    RecordNotFoundError,
    Repository,
    RepositoryConfig,
    ScopeDefinition,
    ValidationError,
    scope_by_field,
    update_criteria_for_map_patch,
    with_delete_scopes,
    with_insert_scopes,
    with_select_scopes,
    with_scope_data,
    with_update_scopes,
)
from sqlrepo.criteria import deleted_only, order_by, paginate, select_by, with_deleted
from tests.models import Account, Dimensions, Document


def _account(email, **kwargs):
    return Account(email=email, **kwargs)


def _race_insert(repo, caplog, operation):
    """Run ``operation`` in a worker that pauses before its INSERT while another create wins."""
    ready, proceed = threading.Event(), threading.Event()

    def _pause(ctx):
        ready.set()
        proceed.wait(5)
        return []

    repo.register_scope("pause", ScopeDefinition(insert=_pause))
    worker_ctx = with_insert_scopes(None, "pause")
    outcome = {}

    def _worker():
        try:
            outcome["record"] = operation(worker_ctx, _account("race@example.com", name="worker"))
        except Exception as exc:  # surfaced through the caller's assertions
            outcome["error"] = exc

    thread = threading.Thread(target=_worker)
    with caplog.at_level(logging.INFO, logger="sqlrepo.repository"):
        thread.start()
        assert ready.wait(5)
        winner = repo.create(None, _account("race@example.com", name="main"))
        proceed.set()
        thread.join(10)
    return outcome, winner


class TestCreateAndRead:
    def test_create_assigns_id_and_defaults(self, accounts):
        created = accounts.create(None, _account("ada@example.com", name="Ada"))
        assert isinstance(created.id, uuid.UUID)
        assert created.score == 0
        assert created.active is True

        fetched = accounts.get_by_id(None, created.id)
        assert fetched.email == "ada@example.com"
        assert fetched.name == "Ada"

    def test_get_by_id_accepts_text_id(self, accounts):
        created = accounts.create(None, _account("text@example.com"))
        assert accounts.get_by_id(None, str(created.id)).id == created.id

    def test_get_by_id_with_malformed_id_is_not_found(self, accounts):
        with pytest.raises(RecordNotFoundError):
            accounts.get_by_id(None, "not-a-uuid")

    def test_duplicate_create_is_duplicate_key(self, accounts):
        accounts.create(None, _account("dup@example.com"))
        with pytest.raises(DuplicateKeyError):
            accounts.create(None, _account("dup@example.com"))

    def test_create_many_preserves_input_order(self, accounts):
        records = [_account(f"user{i}@example.com", score=i) for i in range(5)]
        created = accounts.create_many(None, records, preserve_order=True)
        assert all(a is b for a, b in zip(created, records))
        assert [r.score for r in created] == [0, 1, 2, 3, 4]
        assert accounts.count(None) == 5

    def test_create_many_mixed_shapes(self, accounts):
        records = [
            _account("a@example.com", name="A"),
            _account("b@example.com"),
            _account("c@example.com", name="C"),
        ]
        created = accounts.create_many(None, records)
        assert sorted(r.email for r in created) == ["a@example.com", "b@example.com", "c@example.com"]
        assert accounts.get_by_identifier(None, "b@example.com").name is None

    def test_create_many_empty(self, accounts):
        assert accounts.create_many(None, []) == []

    def test_create_many_issues_one_insert(self, engine, accounts):
        statements = []

        def _record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(engine, "before_cursor_execute", _record)
        try:
            accounts.create_many(
                None,
                [_account("s1@example.com", name="A"), _account("s2@example.com"), _account("s3@example.com", age=30)],
            )
        finally:
            event.remove(engine, "before_cursor_execute", _record)
        inserts = [s for s in statements if s.lstrip().upper().startswith("INSERT")]
        assert len(inserts) == 1
        stored = accounts.get_by_identifier(None, "s2@example.com")
        assert stored.name is None and stored.age is None and stored.score == 0

    def test_create_many_preserve_order_falls_back_with_warning(self, engine, caplog):
        handlers = ModelHandlers.for_model(Account, get_id=lambda record: None)
        repo = Repository(Account, engine, handlers)
        records = [_account("z@example.com"), _account("y@example.com")]
        with caplog.at_level(logging.WARNING, logger="sqlrepo.repository"):
            created = repo.create_many(None, records, preserve_order=True)
        assert "Cannot preserve input order" in caplog.text
        assert not any(a is b for a, b in zip(created, records))
        assert sorted(r.email for r in created) == ["y@example.com", "z@example.com"]
        assert all(isinstance(r.id, uuid.UUID) for r in created)

    def test_raw_sql_maps_rows(self, accounts):
        accounts.create(None, _account("raw@example.com", name="Raw"))
        rows = accounts.raw(None, "SELECT * FROM accounts WHERE email = :email", {"email": "raw@example.com"})
        assert [r.name for r in rows] == ["Raw"]

    def test_composite_round_trip(self, documents):
        created = documents.create(None, Document(title="plan", size=Dimensions(4, 5)))
        fetched = documents.get_by_id(None, created.id)
        assert fetched.size == Dimensions(4, 5)
        assert fetched.width == 4


class TestList:
    def test_default_pagination_and_total(self, accounts):
        accounts.create_many(None, [_account(f"list{i:02d}@example.com") for i in range(30)])
        records, total = accounts.list(None, order_by("email"))
        assert len(records) == 25
        assert total == 30
        assert records[0].email == "list00@example.com"

    def test_criteria_override_default_pagination(self, accounts):
        accounts.create_many(None, [_account(f"page{i:02d}@example.com") for i in range(30)])
        records, total = accounts.list(None, order_by("email"), paginate(10, 25))
        assert [r.email for r in records] == [f"page{i:02d}@example.com" for i in range(25, 30)]
        assert total == 30

    def test_default_pagination_can_be_disabled(self, accounts):
        accounts.create_many(None, [_account(f"all{i:02d}@example.com") for i in range(30)])
        accounts.set_default_list_pagination(None)
        assert accounts.default_list_pagination() == (None, 0)
        records, total = accounts.list(None)
        assert len(records) == total == 30

    def test_count_with_criteria(self, accounts):
        accounts.create_many(None, [_account(f"c{i}@example.com", score=i) for i in range(6)])
        assert accounts.count(None, select_by("score", ">=", 3)) == 3


class TestUpdate:
    def test_update_writes_record(self, accounts):
        account = accounts.create(None, _account("upd@example.com", name="Before"))
        account.name = "After"
        updated = accounts.update(None, account)
        assert updated.name == "After"
        assert accounts.get_by_id(None, account.id).name == "After"

    def test_update_missing_row_is_expected_count_violation(self, accounts):
        ghost = _account("ghost@example.com", id=uuid.uuid4(), name="Ghost")
        with pytest.raises(ExpectedCountViolationError) as exc:
            accounts.update(None, ghost)
        assert exc.value.metadata["actual"] == 0

    def test_scope_narrowed_update_leaves_row_untouched(self, accounts):
        company = uuid.uuid4()
        accounts.register_scope("tenant", scope_by_field("tenant", "company_id"))
        account = accounts.create(None, _account("tenant@example.com", name="Ada", company_id=company))

        account.name = "Changed"
        other_tenant = with_update_scopes(with_scope_data(None, "tenant", uuid.uuid4()), "tenant")
        with pytest.raises(ExpectedCountViolationError):
            accounts.update(other_tenant, account)
        assert accounts.get_by_id(None, account.id).name == "Ada"

        same_tenant = with_update_scopes(with_scope_data(None, "tenant", company), "tenant")
        assert accounts.update(same_tenant, account).name == "Changed"

    def test_update_from_map_patch_writes_only_named_columns(self, accounts):
        account = accounts.create(None, _account("patch@example.com", name="Old", score=3))
        account.score = 99
        updated = accounts.update(None, account, *update_criteria_for_map_patch({"name": "New"}, model=Account))
        assert updated.name == "New"
        assert updated.score == 3
        assert accounts.get_by_id(None, account.id).score == 3

    def test_update_many_returns_records_in_order(self, accounts):
        first = accounts.create(None, _account("m1@example.com"))
        second = accounts.create(None, _account("m2@example.com"))
        first.name, second.name = "one", "two"
        updated = accounts.update_many(None, [second, first])
        assert [r.name for r in updated] == ["two", "one"]

    def test_patch_by_id(self, accounts):
        account = accounts.create(None, _account("pb@example.com", name="Ada", score=5))
        patched = accounts.patch_by_id(None, account.id, {"name": "Grace", "age": "40"})
        assert patched.name == "Grace"
        assert patched.age == 40
        stored = accounts.get_by_id(None, account.id)
        assert (stored.name, stored.age, stored.score) == ("Grace", 40, 5)

    def test_patch_by_id_protects_primary_key(self, accounts):
        account = accounts.create(None, _account("pk@example.com"))
        with pytest.raises(PatchPrimaryKeyNotAllowedError):
            accounts.patch_by_id(None, account.id, {"id": str(uuid.uuid4())})


class TestIdentity:
    def test_identifier_lifecycle(self, accounts):
        with pytest.raises(RecordNotFoundError):
            accounts.get_by_identifier(None, "life@example.com")

        created = accounts.create(None, _account("life@example.com"))
        assert accounts.get_by_identifier(None, "life@example.com").id == created.id

        accounts.delete(None, created)
        with pytest.raises(RecordNotFoundError):
            accounts.get_by_identifier(None, "life@example.com")

    def test_resolve_identifier_tries_options_in_order(self, engine):
        handlers = ModelHandlers.for_model(
            Account,
            identifier="email",
            resolve_identifier=lambda ident: [IdentifierOption(column="company_id"), IdentifierOption(column="email")],
        )
        repo = Repository(Account, engine, handlers)
        company = uuid.uuid4()
        by_company = repo.create(None, _account("co@example.com", company_id=company))
        by_email = repo.create(None, _account("plain@example.com"))

        assert repo.get_by_identifier(None, str(company)).id == by_company.id
        assert repo.get_by_identifier(None, "plain@example.com").id == by_email.id
        with pytest.raises(RecordNotFoundError):
            repo.get_by_identifier(None, "nobody@example.com")

    def test_upsert_updates_existing_match(self, accounts):
        existing = accounts.create(None, _account("ups@example.com", name="Old"))
        result = accounts.upsert(None, _account("ups@example.com", name="New"))
        assert result.id == existing.id
        assert accounts.count(None) == 1
        assert accounts.get_by_id(None, existing.id).name == "New"

    def test_upsert_creates_when_missing(self, accounts):
        result = accounts.upsert(None, _account("fresh@example.com", name="Fresh"))
        assert accounts.get_by_id(None, result.id).name == "Fresh"

    def test_upsert_many(self, accounts):
        accounts.create(None, _account("u1@example.com", name="x"))
        results = accounts.upsert_many(None, [_account("u1@example.com", name="y"), _account("u2@example.com")])
        assert len(results) == 2
        assert accounts.count(None) == 2
        assert accounts.get_by_identifier(None, "u1@example.com").name == "y"

    def test_get_or_create_returns_existing_unmodified(self, accounts):
        existing = accounts.create(None, _account("goc@example.com", name="Original"))
        result = accounts.get_or_create(None, _account("goc@example.com", name="Other"))
        assert result.id == existing.id
        assert result.name == "Original"
        assert accounts.get_by_id(None, existing.id).name == "Original"

    def test_get_or_create_creates_when_missing(self, accounts):
        result = accounts.get_or_create(None, _account("new@example.com"))
        assert accounts.get_by_identifier(None, "new@example.com").id == result.id

    def test_get_or_create_recovers_from_concurrent_insert(self, accounts, caplog):
        outcome, winner = _race_insert(accounts, caplog, accounts.get_or_create)
        assert "error" not in outcome
        assert outcome["record"].id == winner.id
        assert outcome["record"].name == "main"
        assert accounts.count(None) == 1
        assert "Concurrent insert detected" in caplog.text

    def test_upsert_recovers_from_concurrent_insert(self, accounts, caplog):
        outcome, winner = _race_insert(accounts, caplog, accounts.upsert)
        assert "error" not in outcome
        assert outcome["record"].id == winner.id
        assert accounts.count(None) == 1
        assert "Concurrent insert detected" in caplog.text

    def test_duplicate_without_match_reraises_original(self, accounts):
        accounts.create(None, _account("hidden@example.com"))
        accounts.register_scope("tenant", scope_by_field("tenant", "company_id"))
        blind = with_select_scopes(None, "tenant")
        with pytest.raises(DuplicateKeyError):
            accounts.get_or_create(blind, _account("hidden@example.com"))
        assert accounts.count(None) == 1

    def test_get_or_create_uses_resolve_lookup(self, engine):
        handlers = ModelHandlers.for_model(
            Account,
            resolve_lookup=lambda record: [Account.name == record.name] if record.name else [],
        )
        repo = Repository(Account, engine, handlers)
        existing = repo.create(None, _account("first@example.com", name="Lookup"))

        found = repo.get_or_create(None, _account("second@example.com", name="Lookup"))
        assert found.id == existing.id
        assert found.email == "first@example.com"

        created = repo.get_or_create(None, _account("third@example.com"))
        assert created.id != existing.id
        assert repo.count(None) == 2


class TestDelete:
    def test_hard_delete(self, accounts):
        account = accounts.create(None, _account("gone@example.com"))
        accounts.delete(None, account)
        with pytest.raises(RecordNotFoundError):
            accounts.get_by_id(None, account.id)

    def test_hard_delete_of_missing_row_is_reported(self, accounts):
        ghost = _account("nobody@example.com", id=uuid.uuid4())
        with pytest.raises(ExpectedCountViolationError):
            accounts.delete(None, ghost)

    def test_scope_excluded_soft_delete_leaves_record_unchanged(self, documents):
        doc = documents.create(None, Document(title="keep"))
        documents.register_scope("drafts", ScopeDefinition(delete=lambda ctx: [select_by("title", "=", "draft")]))
        with pytest.raises(ExpectedCountViolationError):
            documents.delete(with_delete_scopes(None, "drafts"), doc)
        assert doc.deleted_at is None
        assert documents.get_by_id(None, doc.id).deleted_at is None

    def test_second_soft_delete_is_reported(self, documents):
        doc = documents.create(None, Document(title="draft"))
        documents.delete(None, doc)
        first = doc.deleted_at
        with pytest.raises(ExpectedCountViolationError):
            documents.delete(None, doc)
        assert doc.deleted_at == first

    def test_soft_delete_hides_row(self, documents):
        doc = documents.create(None, Document(title="draft"))
        documents.delete(None, doc)
        assert doc.deleted_at is not None

        with pytest.raises(RecordNotFoundError):
            documents.get_by_id(None, doc.id)
        assert documents.get_by_id(None, doc.id, with_deleted()).title == "draft"
        assert documents.count(None) == 0
        assert documents.count(None, deleted_only()) == 1

    def test_soft_deleted_row_is_not_updated(self, documents):
        doc = documents.create(None, Document(title="draft"))
        documents.delete(None, doc)
        doc.title = "edited"
        with pytest.raises(ExpectedCountViolationError):
            documents.update(None, doc)

    def test_force_delete_removes_row(self, documents):
        doc = documents.create(None, Document(title="draft"))
        documents.delete(None, doc)
        documents.force_delete(None, doc)
        assert documents.count(None, with_deleted()) == 0

    def test_delete_many_requires_criteria(self, accounts):
        accounts.create(None, _account("keep@example.com"))
        with pytest.raises(ValidationError) as exc:
            accounts.delete_many(None)
        assert exc.value.field_errors[0].field == "criteria"
        assert accounts.count(None) == 1

    def test_delete_many_with_criteria(self, accounts):
        accounts.create_many(None, [_account(f"d{i}@example.com", score=i) for i in range(4)])
        assert accounts.delete_many(None, select_by("score", "<", 2)) == 2
        assert accounts.count(None) == 2

    def test_full_table_delete_when_allowed(self, engine):
        repo = Repository(
            Account,
            engine,
            ModelHandlers.for_model(Account, identifier="email"),
            config=RepositoryConfig(allow_full_table_delete=True),
        )
        repo.create_many(None, [_account("x@example.com"), _account("y@example.com")])
        assert repo.delete_many(None) == 2
        assert repo.count(None) == 0

    def test_soft_delete_many(self, documents):
        documents.create_many(None, [Document(title="a"), Document(title="b")])
        assert documents.delete_many(None, select_by("title", "=", "a")) == 1
        assert documents.count(None) == 1
        assert documents.count(None, with_deleted()) == 2


class TestExplicitSession:
    def test_caller_session_is_not_committed(self, engine, accounts):
        with Session(engine) as session:
            accounts.create(None, _account("tx@example.com"), session=session)
            assert accounts.count(None, session=session) == 1
            session.rollback()
        assert accounts.count(None) == 0

    def test_caller_session_commit_persists(self, engine, accounts):
        with Session(engine) as session:
            created = accounts.create(None, _account("commit@example.com"), session=session)
            session.commit()
        assert accounts.get_by_id(None, created.id).email == "commit@example.com"
