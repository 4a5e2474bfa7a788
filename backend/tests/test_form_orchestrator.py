"""
Tests for the form persistence orchestrator.
Covers step id remapping, full replace, tenant-scoped reordering,
idempotent deletes, submissions and partial-write reporting.
"""
import asyncio

import pytest

from app.core.exceptions import NotFoundError, PartialWriteError, PersistenceError, ValidationError
from app.db.store import FormStore
from app.forms.document import select_renderable_fields
from app.forms.schemas import FormInput
from app.forms.service import FormOrchestrator, coerce_answer_value


def _payload(**overrides):
    data = {"title": "Onboarding", "company_id": "acme", "form_type": "single", "fields": []}
    data.update(overrides)
    return FormInput.model_validate(data)


def _multi_step_payload(**overrides):
    data = {
        "form_type": "multi-step",
        "steps": [
            {"id": "tmp-about", "title": "About you"},
            {"id": "tmp-details", "title": "Details"},
        ],
        "fields": [
            {"id": "f-name", "type": "text", "label": "Name", "step_id": "tmp-about"},
            {"id": "f-email", "type": "email", "label": "Email", "step_id": "tmp-details"},
            {"id": "f-phone", "type": "phone", "label": "Phone", "step_id": "tmp-about"},
        ],
    }
    data.update(overrides)
    return _payload(**data)


class FlakyStore(FormStore):
    """Fails every `action` write to `fail_on` after the first `after` succeed."""

    def __init__(self, session, *, fail_on, action="insert", after=0, autocommit=False):
        super().__init__(session, autocommit=autocommit)
        self.fail_on = fail_on
        self.action = action
        self.after = after
        self.attempts = 0

    def _maybe_fail(self, action, collection):
        if action == self.action and collection == self.fail_on:
            self.attempts += 1
            if self.attempts > self.after:
                raise PersistenceError(f"Failed to {action} {collection}", operation=f"{action}:{collection}")

    async def insert(self, collection, values):
        self._maybe_fail("insert", collection)
        return await super().insert(collection, values)

    async def insert_many(self, collection, rows):
        self._maybe_fail("insert", collection)
        return await super().insert_many(collection, rows)

    async def update(self, collection, values, *, filters):
        self._maybe_fail("update", collection)
        return await super().update(collection, values, filters=filters)


class TestCreate:
    @pytest.mark.anyio
    async def test_temporary_step_ids_are_remapped(self, orchestrator):
        doc = await orchestrator.create_form(_multi_step_payload(), created_by="user-1")

        step_ids = {step.title: step.id for step in doc.steps}
        assert set(step_ids) == {"About you", "Details"}
        assert not {"tmp-about", "tmp-details"} & set(step_ids.values())

        by_label = {f.label: f for f in doc.fields}
        assert by_label["Name"].step_id == step_ids["About you"]
        assert by_label["Phone"].step_id == step_ids["About you"]
        assert by_label["Email"].step_id == step_ids["Details"]
        assert doc.form_type == "multi-step"
        assert doc.created_by == "user-1"
        assert doc.is_active is True

    @pytest.mark.anyio
    async def test_field_order_restarts_per_step(self, orchestrator):
        doc = await orchestrator.create_form(_multi_step_payload())
        by_label = {f.label: f.order_index for f in doc.fields}
        assert by_label == {"Name": 0, "Phone": 1, "Email": 0}
        assert [s.order_index for s in doc.steps] == [0, 1]

    @pytest.mark.anyio
    async def test_positional_step_keys_when_steps_have_no_id(self, orchestrator):
        payload = _payload(
            form_type="multi-step",
            steps=[{"title": "One"}, {"title": "Two"}],
            fields=[{"type": "text", "label": "Q", "step_id": "step_1"}],
        )
        doc = await orchestrator.create_form(payload)
        two = next(s for s in doc.steps if s.title == "Two")
        assert doc.fields[0].step_id == two.id

    @pytest.mark.anyio
    async def test_unresolved_step_reference_is_stored_without_step(self, orchestrator):
        payload = _multi_step_payload(
            fields=[{"type": "text", "label": "Orphan", "step_id": "tmp-missing"}],
        )
        doc = await orchestrator.create_form(payload)
        assert doc.fields[0].step_id is None

    @pytest.mark.anyio
    async def test_single_form_ignores_steps(self, orchestrator):
        payload = _payload(steps=[{"id": "tmp-1", "title": "Ignored"}], fields=[{"type": "text", "label": "Name"}])
        doc = await orchestrator.create_form(payload)
        assert doc.steps == []
        assert doc.fields[0].step_id is None

    @pytest.mark.anyio
    async def test_multi_step_without_steps_reads_as_single(self, orchestrator):
        doc = await orchestrator.create_form(_payload(form_type="multi-step", steps=[], fields=[{"type": "text"}]))
        assert doc.form_type == "single"
        assert doc.stored_form_type == "multi-step"

    @pytest.mark.anyio
    async def test_display_fields_are_never_required(self, orchestrator):
        payload = _payload(fields=[{"type": "heading", "content": "Welcome", "required": True}])
        doc = await orchestrator.create_form(payload)
        assert doc.fields[0].required is False
        assert doc.fields[0].content == "Welcome"

    @pytest.mark.anyio
    async def test_multi_step_round_trip_renders_first_step(self, orchestrator):
        created = await orchestrator.create_form(
            _payload(form_type="multi-step", steps=[{"id": "s1", "title": "Info"}], fields=[{"type": "text", "step_id": "s1"}])
        )
        doc = await orchestrator.get_form(created.id)

        assert len(doc.steps) == 1
        (only,) = select_renderable_fields(doc, 0)
        assert only.step_id == doc.steps[0].id

    @pytest.mark.anyio
    async def test_validation_runs_before_any_write(self, orchestrator, store):
        with pytest.raises(ValidationError):
            await orchestrator.create_form(_payload(title=""))
        assert await store.select("forms") == []


class TestReplace:
    @pytest.mark.anyio
    async def test_replace_drops_omitted_fields_and_steps(self, orchestrator, store):
        created = await orchestrator.create_form(_multi_step_payload())

        replacement = _payload(
            title="Onboarding v2",
            form_type="multi-step",
            steps=[{"id": "tmp-only", "title": "Only step"}],
            fields=[{"type": "textarea", "label": "Notes", "step_id": "tmp-only"}],
        )
        doc = await orchestrator.replace_form(created.id, replacement)

        assert doc.title == "Onboarding v2"
        assert [s.title for s in doc.steps] == ["Only step"]
        assert [f.label for f in doc.fields] == ["Notes"]
        assert doc.fields[0].step_id == doc.steps[0].id
        assert len(await store.select("form_fields", filters={"form_id": created.id})) == 1
        assert len(await store.select("form_steps", filters={"form_id": created.id})) == 1

    @pytest.mark.anyio
    async def test_replace_keeps_tenant(self, orchestrator):
        created = await orchestrator.create_form(_payload())
        doc = await orchestrator.replace_form(created.id, _payload(company_id="globex"))
        assert doc.company_id == "acme"

    @pytest.mark.anyio
    async def test_switching_to_single_clears_steps(self, orchestrator):
        created = await orchestrator.create_form(_multi_step_payload())
        doc = await orchestrator.replace_form(created.id, _payload(fields=[{"type": "text", "label": "Name"}]))
        assert doc.form_type == "single"
        assert doc.steps == []
        assert doc.fields[0].step_id is None

    @pytest.mark.anyio
    async def test_replace_missing_form(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.replace_form("does-not-exist", _payload())


class TestDeleteAndToggle:
    @pytest.mark.anyio
    async def test_delete_removes_everything_owned(self, orchestrator, store):
        doc = await orchestrator.create_form(_multi_step_payload())
        await orchestrator.submit_form_response(doc.id, [{"field_id": doc.fields[0].id, "value": "Ada"}])

        await orchestrator.delete_form(doc.id)

        for collection in ("forms", "form_steps", "form_fields", "form_responses", "form_response_data"):
            assert await store.select(collection) == [], collection

    @pytest.mark.anyio
    async def test_delete_is_idempotent(self, orchestrator):
        doc = await orchestrator.create_form(_payload())
        await orchestrator.delete_form(doc.id)
        await orchestrator.delete_form(doc.id)
        await orchestrator.delete_form("never-existed")

    @pytest.mark.anyio
    async def test_toggle_flips_active_flag(self, orchestrator):
        doc = await orchestrator.create_form(_payload())
        toggled = await orchestrator.toggle_form_activity(doc.id)
        assert toggled.is_active is False
        assert (await orchestrator.toggle_form_activity(doc.id)).is_active is True

    @pytest.mark.anyio
    async def test_toggle_missing_form(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.toggle_form_activity("missing")

    @pytest.mark.anyio
    async def test_inactive_forms_hidden_from_default_listing(self, orchestrator):
        live = await orchestrator.create_form(_payload(title="Live"))
        hidden = await orchestrator.create_form(_payload(title="Hidden"))
        await orchestrator.toggle_form_activity(hidden.id)

        assert [f.id for f in await orchestrator.list_forms("acme")] == [live.id]
        everything = await orchestrator.list_forms("acme", include_inactive=True)
        assert {f.id for f in everything} == {live.id, hidden.id}

    @pytest.mark.anyio
    async def test_listing_requires_company(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.list_forms("")


class TestReorder:
    @pytest.mark.anyio
    async def test_reorder_is_tenant_scoped(self, orchestrator):
        first = await orchestrator.create_form(_payload(title="First"))
        second = await orchestrator.create_form(_payload(title="Second"))
        foreign = await orchestrator.create_form(_payload(title="Foreign", company_id="globex"))

        result = await orchestrator.reorder_forms("acme", [second.id, first.id, foreign.id])

        assert result.updated_count == 3
        assert [(entry.id, entry.order) for entry in result.final_order] == [(second.id, 1), (first.id, 2)]
        untouched = await orchestrator.get_form(foreign.id)
        assert untouched.order_index == 0
        assert [f.id for f in await orchestrator.list_forms("acme")] == [second.id, first.id]

    @pytest.mark.anyio
    @pytest.mark.parametrize("company_id,form_ids", [("acme", "not-a-list"), ("", []), (None, None)])
    async def test_reorder_rejects_bad_input(self, orchestrator, company_id, form_ids):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.reorder_forms(company_id, form_ids)
        assert exc_info.value.message == "formIds array and companyId are required"


class TestSubmit:
    @pytest.mark.anyio
    async def test_submission_stores_coerced_answers(self, orchestrator, store, identity):
        identity.display_names["user-9"] = "ada"
        doc = await orchestrator.create_form(
            _payload(fields=[{"type": "select", "label": "Pick"}, {"type": "checkbox", "label": "Agree"}, {"type": "text"}])
        )
        pick, agree, blank = doc.fields

        response_id = await orchestrator.submit_form_response(
            doc.id,
            [
                {"field_id": pick.id, "value": ["red", "blue"]},
                {"field_id": agree.id, "value": True},
                {"field_id": blank.id, "value": ""},
            ],
            "user-9",
            ip_address="10.0.0.1",
            user_agent="pytest",
        )

        response = (await store.select("form_responses", filters={"id": response_id}))[0]
        assert response["username"] == "ada"
        assert response["submitted_by"] == "user-9"
        assert response["ip_address"] == "10.0.0.1"
        values = {row["field_id"]: row["value"] for row in await store.select("form_response_data")}
        assert values == {pick.id: "red, blue", agree.id: "true", blank.id: None}

    @pytest.mark.anyio
    async def test_display_name_failure_does_not_block_submission(self, orchestrator, store, identity):
        identity.display_name_error = RuntimeError("identity down")
        doc = await orchestrator.create_form(_payload(fields=[{"type": "text"}]))

        response_id = await orchestrator.submit_form_response(doc.id, [{"field_id": doc.fields[0].id, "value": "x"}], "user-1")

        response = (await store.select("form_responses", filters={"id": response_id}))[0]
        assert response["username"] is None

    @pytest.mark.anyio
    async def test_slow_display_name_lookup_times_out(self, store, identity):
        async def slow(user_id):
            await asyncio.sleep(1)
            return "late"

        identity.get_display_name = slow
        orchestrator = FormOrchestrator(store, identity, display_name_timeout=0.05)
        doc = await orchestrator.create_form(_payload())

        response_id = await orchestrator.submit_form_response(doc.id, [], "user-1")
        response = (await store.select("form_responses", filters={"id": response_id}))[0]
        assert response["username"] is None

    @pytest.mark.anyio
    async def test_answers_must_be_a_list(self, orchestrator):
        doc = await orchestrator.create_form(_payload())
        with pytest.raises(ValidationError):
            await orchestrator.submit_form_response(doc.id, {"field_id": "x"})

    @pytest.mark.anyio
    async def test_each_answer_needs_field_id(self, orchestrator):
        doc = await orchestrator.create_form(_payload())
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit_form_response(doc.id, [{"value": "orphan"}])
        assert "responses[0].field_id" in exc_info.value.field_errors

    @pytest.mark.anyio
    async def test_unknown_form(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.submit_form_response("missing", [])


class TestWriteFailures:
    @pytest.mark.anyio
    async def test_autocommit_failure_reports_partial_write(self, test_session):
        store = FlakyStore(test_session, fail_on="form_fields", after=1, autocommit=True)
        orchestrator = FormOrchestrator(store)

        with pytest.raises(PartialWriteError) as exc_info:
            await orchestrator.create_form(_multi_step_payload())

        error = exc_info.value
        # form + two steps + first field were committed before the second field failed
        assert error.completed == 4
        assert error.stage == "inserting fields"
        assert error.failed_at == "f-email"
        assert error.details["consistent"] is False

        leftovers = FormStore(test_session)
        assert len(await leftovers.select("forms")) == 1
        assert len(await leftovers.select("form_fields")) == 1

    @pytest.mark.anyio
    async def test_transactional_failure_rolls_back(self, test_session):
        store = FlakyStore(test_session, fail_on="form_fields", after=1)
        orchestrator = FormOrchestrator(store)

        with pytest.raises(PersistenceError) as exc_info:
            await orchestrator.create_form(_multi_step_payload())

        assert not isinstance(exc_info.value, PartialWriteError)
        assert exc_info.value.stage == "inserting fields"
        assert await FormStore(test_session).select("forms") == []

    @pytest.mark.anyio
    async def test_replace_failure_after_deletes_reports_partial_write(self, orchestrator, test_session):
        created = await orchestrator.create_form(_multi_step_payload())
        flaky = FormOrchestrator(FlakyStore(test_session, fail_on="form_fields", autocommit=True))

        with pytest.raises(PartialWriteError) as exc_info:
            await flaky.replace_form(
                created.id,
                _payload(title="Onboarding v2", fields=[{"id": "f-notes", "type": "textarea", "label": "Notes"}]),
            )

        error = exc_info.value
        # form update + step delete + field delete were committed
        assert error.completed == 3
        assert error.operation == "replace_form"
        assert error.stage == "inserting fields"
        assert error.failed_at == "f-notes"

        leftovers = FormStore(test_session)
        assert (await leftovers.select("forms"))[0]["title"] == "Onboarding v2"
        assert await leftovers.select("form_steps") == []
        assert await leftovers.select("form_fields") == []

    @pytest.mark.anyio
    async def test_transactional_replace_failure_keeps_old_definition(self, orchestrator, test_session):
        created = await orchestrator.create_form(_multi_step_payload())
        flaky = FormOrchestrator(FlakyStore(test_session, fail_on="form_fields"))

        with pytest.raises(PersistenceError) as exc_info:
            await flaky.replace_form(created.id, _payload(title="Onboarding v2", fields=[{"type": "text"}]))

        assert not isinstance(exc_info.value, PartialWriteError)
        assert exc_info.value.stage == "inserting fields"

        doc = await orchestrator.get_form(created.id)
        assert doc.title == "Onboarding"
        assert [s.title for s in doc.steps] == ["About you", "Details"]
        assert [f.label for f in doc.fields] == ["Name", "Phone", "Email"]

    @pytest.mark.anyio
    async def test_reorder_failure_midway_reports_partial_write(self, orchestrator, test_session):
        first = await orchestrator.create_form(_payload(title="First"))
        second = await orchestrator.create_form(_payload(title="Second"))
        third = await orchestrator.create_form(_payload(title="Third"))
        flaky = FormOrchestrator(FlakyStore(test_session, fail_on="forms", action="update", after=1, autocommit=True))

        with pytest.raises(PartialWriteError) as exc_info:
            await flaky.reorder_forms("acme", [third.id, second.id, first.id])

        error = exc_info.value
        assert error.completed == 1
        assert error.stage == "updating order"
        assert error.failed_at == second.id

        rows = {row["id"]: row["order_index"] for row in await FormStore(test_session).select("forms")}
        assert rows == {third.id: 1, second.id: 0, first.id: 0}

    @pytest.mark.anyio
    async def test_transactional_reorder_failure_changes_nothing(self, orchestrator, test_session):
        first = await orchestrator.create_form(_payload(title="First"))
        second = await orchestrator.create_form(_payload(title="Second"))
        flaky = FormOrchestrator(FlakyStore(test_session, fail_on="forms", action="update", after=1))

        with pytest.raises(PersistenceError) as exc_info:
            await flaky.reorder_forms("acme", [second.id, first.id])

        assert not isinstance(exc_info.value, PartialWriteError)
        rows = await FormStore(test_session).select("forms")
        assert [row["order_index"] for row in rows] == [0, 0]

    @pytest.mark.anyio
    async def test_failed_answer_insert_is_not_reported_as_success(self, orchestrator, test_session):
        doc = await orchestrator.create_form(_payload(fields=[{"type": "text"}]))
        flaky = FormOrchestrator(FlakyStore(test_session, fail_on="form_response_data", autocommit=True))

        with pytest.raises(PartialWriteError) as exc_info:
            await flaky.submit_form_response(doc.id, [{"field_id": doc.fields[0].id, "value": "x"}], "user-1")

        # the response row landed, its answers did not
        assert exc_info.value.completed == 1
        assert exc_info.value.stage == "inserting response data"
        leftovers = FormStore(test_session)
        assert len(await leftovers.select("form_responses")) == 1
        assert await leftovers.select("form_response_data") == []

    @pytest.mark.anyio
    async def test_transactional_failed_answer_insert_stores_nothing(self, orchestrator, test_session):
        doc = await orchestrator.create_form(_payload(fields=[{"type": "text"}]))
        flaky = FormOrchestrator(FlakyStore(test_session, fail_on="form_response_data"))

        with pytest.raises(PersistenceError) as exc_info:
            await flaky.submit_form_response(doc.id, [{"field_id": doc.fields[0].id, "value": "x"}])

        assert not isinstance(exc_info.value, PartialWriteError)
        assert exc_info.value.stage == "inserting response data"
        assert await FormStore(test_session).select("form_responses") == []


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, None),
        ("", None),
        ("hello", "hello"),
        (False, "false"),
        (3, "3"),
        (["a", "b"], "a, b"),
        ({"k": 1}, '{"k": 1}'),
    ],
)
def test_coerce_answer_value(value, expected):
    assert coerce_answer_value(value) == expected
