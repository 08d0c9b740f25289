"""
field_intake.orchestrator
field_intake/orchestrator.py
============================

Flow orchestrator for one conversation of the field-intake engine.

`FlowOrchestrator` is the state machine that takes an inbound event (typed
text, an image, a shared location), turns it into field candidates through the
extractor registry, merges them into the session's form, runs the
linked-entity and bulk-extraction confirmation sub-flows, persists the result
through the versioned store, and returns a stable **FlowResult**.

High-level responsibilities
---------------------------
1) **Dispatch on ConversationState**: one handler per non-terminal state
   (COLLECTING, CONFIRM_LINKED_ENTITY, CONFIRM_BULK_EXTRACTION). Terminal
   sessions are never mutated; callers get `kind="inactive"`.

2) **Cancellation first**: a cancellation utterance in any non-terminal state
   moves straight to TERMINAL_CANCELLED and clears the form.

3) **Collecting**: extract (pending field as hint) -> merge -> auxiliary
   derived data (best-effort) -> link the entity when the identifying field is
   complete -> persist -> finalize when ready, else request the lowest-order
   missing field with a progress counter. Merged slots and the next pending
   field go out in a single write.

4) **Optimistic concurrency**: every mutation runs inside
   `retry.optimistic_transaction`; on a version conflict the same semantic
   step is re-applied to the fresh record. Extraction runs at most once per
   event; only read-only lookups run inside a mutation. Exhausted retries
   come back as `kind="conflict"`.

5) **Finalization exactly once**: a finalization claim is written first
   (compare-and-swap), then `Finalizer.commit` is called, then the session
   moves to TERMINAL_COMPLETED. A failed commit releases the claim and
   returns `kind="error"` (FINALIZATION_FAILURE); the next inbound event
   retries.

6) **Notify after persist**: the Notifier is called only once the step's
   write (or deliberate no-op) has gone through.

FlowResult contract (stable output shape)
-----------------------------------------
    FlowResult(
      kind: "prompt" | "completed" | "cancelled" | "conflict" | "error" | "inactive",
      prompt: PromptSpec | None,     # what was sent to the notifier, if anything
      record_id: str | None,         # set when kind == "completed"
      error: dict | None,            # error_handler envelope for conflict/error/inactive
      state: ConversationState | None,
      version: int | None,
      correlation_id: str,
    )
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from field_intake import app_logger, bulk_confirmation, prompts
from field_intake.config import Settings
from field_intake.entity_resolver import LinkedEntityResolver
from field_intake.error_handler import (
    ErrorCode,
    ErrorOrigin,
    RetriesExhausted,
    make_error,
    new_correlation_id,
    summarize_for_log,
)
from field_intake.extractor_registry import ExtractorRegistry, SafeExtractor
from field_intake.field_merger import ValidationIssue, merge
from field_intake.form_state import (
    ConversationState,
    FieldCandidate,
    FinalizationClaim,
    FormState,
    FormType,
    SessionRecord,
    confirm_slot,
    form_type_of,
    get_slot,
    new_form,
    now_iso,
    reset_slot,
    slots_of,
    with_slots,
    with_updates,
)
from field_intake.ports import AuxiliaryLookup, EntityLookup, Finalizer, Notifier, VersionedStore
from field_intake.prompts import PromptSpec
from field_intake.replies import Reply, classify_reply, is_cancellation
from field_intake.retry import Step, TransactionResult, optimistic_transaction
from field_intake.schema_registry import SchemaRegistry, default_registry


# ------------------------------- Result types ---------------------------------

@dataclass(frozen=True)
class FlowResult:
    kind: str
    prompt: Optional[PromptSpec] = None
    record_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    state: Optional[ConversationState] = None
    version: Optional[int] = None
    correlation_id: Optional[str] = None


@dataclass
class _Outcome:
    kind: str = "prompt"
    prompt: Optional[PromptSpec] = None
    finalize: bool = False
    error: Optional[Dict[str, Any]] = None
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


class _Event:
    """One inbound event; candidates are extracted lazily and at most once."""

    def __init__(self, raw_input: Any, input_kind: str, extract: Callable[[Any, str, str, Optional[str]], List[FieldCandidate]]):
        self.raw_input = raw_input
        self.input_kind = input_kind
        self._extract = extract
        self._candidates: Optional[List[FieldCandidate]] = None

    @property
    def text(self) -> str:
        return self.raw_input if isinstance(self.raw_input, str) else ""

    def candidates(self, form: FormState) -> List[FieldCandidate]:
        if self._candidates is None:
            self._candidates = self._extract(self.raw_input, self.input_kind, form.form_type, form.pending_field)
        return self._candidates


def _join(*parts: Optional[str]) -> Optional[str]:
    text = " ".join(p for p in parts if p)
    return text or None


# ------------------------------- Orchestrator ---------------------------------

class FlowOrchestrator:
    def __init__(
        self,
        *,
        store: VersionedStore,
        extractors: Any,
        entity_lookup: EntityLookup,
        finalizer: Finalizer,
        notifier: Notifier,
        auxiliary_lookup: Optional[AuxiliaryLookup] = None,
        registry: Optional[SchemaRegistry] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.registry = registry or default_registry()
        self.settings = settings or self.registry.settings
        self.notifier = notifier
        self.finalizer = finalizer
        self.auxiliary_lookup = auxiliary_lookup
        self.resolver = LinkedEntityResolver(entity_lookup, self.registry)
        self._extractors = extractors
        self._sleep = sleep

        self._handlers: Dict[ConversationState, Callable[[SessionRecord, _Event, str, str], Step]] = {
            ConversationState.COLLECTING: self._on_collecting,
            ConversationState.CONFIRM_LINKED_ENTITY: self._on_confirm_entity,
            ConversationState.CONFIRM_BULK_EXTRACTION: self._on_confirm_bulk,
        }

    # ------------------------------- Main API ---------------------------------

    def start_flow(
        self,
        conversation_key: str,
        form_type: FormType | str,
        initial_candidates: Optional[Sequence[FieldCandidate]] = None,
    ) -> PromptSpec:
        """
        Create (or replace) the session for `conversation_key` with an empty form
        of `form_type`, merge any initial candidates, persist, and return the
        first prompt (also sent to the notifier).
        """
        self.registry.get_definition(form_type)
        ft = FormType(form_type)
        cid = new_correlation_id("start")
        initial = list(initial_candidates or [])

        def _mutate(rec: Optional[SessionRecord]) -> Step:
            form = new_form(ft)
            notices: List[Optional[str]] = []
            updated: List[str] = []
            if initial:
                result = merge(slots_of(form), initial, ft, registry=self.registry)
                form = with_slots(form, result.merged_slots)
                updated = result.updated_fields
                notices.append(self._validation_notice(form, result.validation_errors))
            step = self._advance(form, conversation_key, cid, updated=updated, notice=_join(*notices))
            step.outcome.events.insert(0, ("STARTED", {"form_type": ft.value, "initial": len(initial), "replaced": rec is not None}))
            return step

        try:
            tx = self._transact(conversation_key, _mutate, cid)
        except RetriesExhausted as e:
            result = self._conflict(conversation_key, cid, e)
            return PromptSpec(body=result.error["user_message"])

        result = self._after(conversation_key, tx, cid)
        if result.prompt is not None:
            return result.prompt
        return PromptSpec(body=(result.error or {}).get("user_message") or "")

    def handle_inbound_event(self, conversation_key: str, raw_input: Any, input_kind: str = "text") -> FlowResult:
        """Process one inbound user event (text / image / location) for a conversation."""
        return self._handle(conversation_key, raw_input, input_kind)

    def handle_confirmation_response(self, conversation_key: str, raw_text: str) -> FlowResult:
        """Answer to a CONFIRM_* prompt (or to a pending-value question while collecting)."""
        return self._handle(conversation_key, raw_text, "text")

    # ------------------------------ Dispatch ----------------------------------

    def _handle(self, key: str, raw_input: Any, input_kind: str) -> FlowResult:
        cid = new_correlation_id("evt")
        event = _Event(raw_input, input_kind, lambda raw, kind, ft, pending: self._extract(raw, kind, ft, pending, cid, key))

        def _mutate(rec: Optional[SessionRecord]) -> Step:
            return self._dispatch(rec, event, key, cid)

        try:
            tx = self._transact(key, _mutate, cid)
        except RetriesExhausted as e:
            return self._conflict(key, cid, e)
        return self._after(key, tx, cid)

    def _dispatch(self, rec: Optional[SessionRecord], event: _Event, key: str, cid: str) -> Step:
        if rec is None:
            err = make_error(
                code=ErrorCode.SESSION_NOT_FOUND,
                origin=ErrorOrigin.FLOW,
                retryable=False,
                context={"conversation_key": key},
                correlation_id=cid,
            )
            return Step(form=None, state=ConversationState.TERMINAL_CANCELLED, outcome=_Outcome(kind="inactive", error=err), write=False)

        if rec.state.is_terminal or rec.form is None:
            return Step(form=rec.form, state=rec.state, outcome=_Outcome(kind="inactive"), write=False)

        if event.input_kind == "text" and is_cancellation(event.text):
            return Step(
                form=None,
                state=ConversationState.TERMINAL_CANCELLED,
                outcome=_Outcome(
                    kind="cancelled",
                    prompt=prompts.cancelled(),
                    events=[("CANCELLED", {"from_state": rec.state.value})],
                ),
            )

        handler = self._handlers[rec.state]
        return handler(rec, event, key, cid)

    # ----------------------------- State handlers -----------------------------

    def _on_collecting(self, rec: SessionRecord, event: _Event, key: str, cid: str) -> Step:
        form = rec.form
        ft = form_type_of(form)

        # yes/no about an inferred value awaiting approval
        pending = form.pending_field
        if event.input_kind == "text" and pending and get_slot(form, pending).requires_confirmation:
            reply = classify_reply(event.text)
            if reply == Reply.AFFIRMATIVE:
                return self._advance(confirm_slot(form, pending), key, cid, updated=[pending], events=[("FIELD_CONFIRMED", {"field": pending})])
            if reply == Reply.NEGATIVE:
                return self._advance(reset_slot(form, pending), key, cid, ask=pending, events=[("FIELD_REJECTED", {"field": pending})])

        candidates = event.candidates(form)

        if event.input_kind == "image":
            return self._stage_bulk(form, candidates, key, cid)

        result = merge(slots_of(form), candidates, ft, pending_field=pending, registry=self.registry)
        form = with_slots(form, result.merged_slots)
        events: List[Tuple[str, Dict[str, Any]]] = [
            (
                "FIELDS_MERGED",
                {
                    "candidates": len(candidates),
                    "updated": result.updated_fields,
                    "errors": [e.field for e in result.validation_errors],
                    "pending_field": pending,
                },
            )
        ]
        form, derived_notice = self._derive(form, result.updated_fields, key, cid)
        notice = _join(self._validation_notice(form, result.validation_errors), derived_notice)
        if not candidates and event.input_kind == "text":
            notice = _join(notice, "I couldn't find any report details in that message.")
        return self._advance(form, key, cid, updated=result.updated_fields, notice=notice, events=events)

    def _on_confirm_entity(self, rec: SessionRecord, event: _Event, key: str, cid: str) -> Step:
        form = rec.form
        reply = classify_reply(event.text) if event.input_kind == "text" else Reply.UNKNOWN

        if reply == Reply.AFFIRMATIVE:
            form = self.resolver.confirm(form)
            return self._advance(form, key, cid, events=[("ENTITY_CONFIRMED", {"entity_id": form.linked_entity_id})])

        if reply == Reply.NEGATIVE:
            entity_id = form.linked_entity_id
            form = self.resolver.reject(form)
            ident = self.registry.identifying_field(form_type_of(form))
            return self._advance(
                form,
                key,
                cid,
                ask=ident,
                notice="OK, that's not the right equipment.",
                events=[("ENTITY_REJECTED", {"entity_id": entity_id})],
            )

        again = prompts.not_understood(prompts.confirm_entity(form, progress=self.registry.progress(form)))
        return Step(form=form, state=rec.state, outcome=_Outcome(prompt=again, events=[("REPLY_NOT_UNDERSTOOD", {})]), write=False)

    def _on_confirm_bulk(self, rec: SessionRecord, event: _Event, key: str, cid: str) -> Step:
        form = rec.form
        reply = classify_reply(event.text) if event.input_kind == "text" else Reply.UNKNOWN

        if reply == Reply.AFFIRMATIVE:
            form, committed = bulk_confirmation.commit(form, registry=self.registry)
            return self._advance(form, key, cid, updated=committed, events=[("BULK_COMMITTED", {"fields": committed})])

        if reply == Reply.NEGATIVE:
            discarded = sorted(form.staged_extraction)
            form = bulk_confirmation.discard(form)
            return self._advance(
                form,
                key,
                cid,
                notice="OK, I discarded those details. Let's go one by one.",
                events=[("BULK_DISCARDED", {"fields": discarded})],
            )

        again = prompts.not_understood(prompts.confirm_bulk(form.staged_extraction, registry=self.registry, form_type=form.form_type))
        return Step(form=form, state=rec.state, outcome=_Outcome(prompt=again, events=[("REPLY_NOT_UNDERSTOOD", {})]), write=False)

    # ------------------------------ Step builders -----------------------------

    def _stage_bulk(self, form: FormState, candidates: Sequence[FieldCandidate], key: str, cid: str) -> Step:
        staged = bulk_confirmation.stage(form, candidates, registry=self.registry)
        if not staged.staged:
            return self._advance(
                form,
                key,
                cid,
                notice="I couldn't read any report details from that image.",
                events=[("BULK_EMPTY", {"candidates": len(candidates)})],
            )
        form = with_updates(staged.form, pending_field=None)
        prompt = prompts.confirm_bulk(form.staged_extraction, registry=self.registry, form_type=form.form_type)
        return Step(
            form=form,
            state=ConversationState.CONFIRM_BULK_EXTRACTION,
            outcome=_Outcome(prompt=prompt, events=[("BULK_STAGED", {"fields": staged.staged})]),
        )

    def _advance(
        self,
        form: FormState,
        key: str,
        cid: str,
        *,
        updated: Sequence[str] = (),
        notice: Optional[str] = None,
        ask: Optional[str] = None,
        events: Optional[List[Tuple[str, Dict[str, Any]]]] = None,
    ) -> Step:
        """
        Decide the next state for a form in (or returning to) COLLECTING:
        entity confirmation, finalization, or the next field request.
        """
        events = list(events or [])
        ft = form_type_of(form)

        ident = self.registry.identifying_field(ft) if self.registry.requires_entity(ft) else None
        if self.resolver.needs_lookup(form):
            res = self.resolver.resolve(form, correlation_id=cid, conversation_key=key)
            if res.found:
                form = with_updates(res.form, pending_field=None)
                prompt = prompts.confirm_entity(form, progress=self.registry.progress(form), notice=notice)
                events.append(("ENTITY_STAGED", {"entity_id": res.entity_id}))
                return Step(form=form, state=ConversationState.CONFIRM_LINKED_ENTITY, outcome=_Outcome(prompt=prompt, events=events))
            form = res.form
            err = make_error(code=ErrorCode.ENTITY_NOT_FOUND, origin=ErrorOrigin.LOOKUP, retryable=True, correlation_id=cid)
            notice = _join(notice, err["user_message"])
            ask = ident
            events.append(("ENTITY_NOT_FOUND", {"lookup_failed": res.lookup_failed}))

        if self.registry.is_complete(form):
            form = with_updates(form, pending_field=None)
            return Step(form=form, state=ConversationState.COLLECTING, outcome=_Outcome(finalize=True, events=events))

        target = ask if ask and not get_slot(form, ask).complete else self.registry.next_field(form)
        if target is None:
            # every field complete but the entity is still unlinked
            target = ident
        definition = self.registry.get_field(ft, target)
        form = with_updates(form, pending_field=target)
        prompt = prompts.request_field(
            definition,
            progress=self.registry.progress(form),
            notice=notice,
            existing=get_slot(form, target),
        )
        events.append(("FIELD_REQUESTED", {"field": target, "progress": list(self.registry.progress(form))}))
        return Step(form=form, state=ConversationState.COLLECTING, outcome=_Outcome(prompt=prompt, events=events))

    def _validation_notice(self, form: FormState, errors: Sequence[ValidationIssue]) -> Optional[str]:
        if not errors:
            return None
        first = errors[0]
        definition = self.registry.get_field(form_type_of(form), first.field)
        label = definition.label if definition else first.field
        return f'"{first.value}" is not a valid {label.lower()}: {first.error}.'

    def _derive(self, form: FormState, updated: Sequence[str], key: str, cid: str) -> Tuple[FormState, Optional[str]]:
        """Best-effort auxiliary data once a location with coordinates is in; failures are logged and ignored."""
        if self.auxiliary_lookup is None or "location" not in updated:
            return form, None
        slot = get_slot(form, "location")
        if not slot.complete or slot.coordinates is None:
            return form, None
        try:
            derived = self.auxiliary_lookup.compute(
                {"latitude": slot.coordinates.latitude, "longitude": slot.coordinates.longitude}
            )
        except Exception as e:
            err = make_error(
                code=ErrorCode.AUXILIARY_LOOKUP_FAILURE,
                origin=ErrorOrigin.LOOKUP,
                retryable=True,
                dev_message=f"{type(e).__name__}: {e}",
                details={"lookup": type(self.auxiliary_lookup).__name__},
                correlation_id=cid,
            )
            app_logger.log_error_event("Flow.AUXILIARY_LOOKUP_FAILED", err, conversation_key=key)
            return form, None
        if not derived:
            return form, None
        merged = {**(form.derived_data or {}), **derived}
        return with_updates(form, derived_data=merged), prompts.describe_derived(derived)

    # ------------------------------ Finalization ------------------------------

    def _finalize(self, key: str, cid: str) -> FlowResult:
        token = uuid.uuid4().hex
        ttl = timedelta(seconds=self.settings.finalize_claim_ttl_seconds)

        def _claim(rec: Optional[SessionRecord]) -> Step:
            if rec is None or rec.state.is_terminal or rec.form is None:
                return Step(form=None, state=ConversationState.TERMINAL_COMPLETED, outcome="inactive", write=False)
            form = rec.form
            if rec.state != ConversationState.COLLECTING or not self.registry.is_complete(form):
                return Step(form=form, state=rec.state, outcome="not_ready", write=False)
            claim = form.finalization_claim
            if claim is not None and not _claim_expired(claim, ttl):
                return Step(form=form, state=rec.state, outcome="in_progress", write=False)
            claimed = with_updates(form, finalization_claim=FinalizationClaim(token=token, claimed_at=now_iso()))
            return Step(form=claimed, state=rec.state, outcome="claimed")

        try:
            tx = self._transact(key, _claim, cid)
        except RetriesExhausted as e:
            return self._conflict(key, cid, e)

        if tx.outcome == "inactive":
            return self._result(FlowResult(kind="inactive", correlation_id=cid), tx.record)
        if tx.outcome == "in_progress":
            prompt = prompts.finalizing()
            self.notifier.send(key, prompt)
            return self._result(FlowResult(kind="prompt", prompt=prompt, correlation_id=cid), tx.record)
        if tx.outcome == "not_ready":
            # something changed between the ready write and the claim; ask again
            return self._reprompt(key, tx.record, cid)

        form = tx.record.form
        app_logger.log_flow_event("FINALIZE_CLAIMED", {"token": token[:8]}, correlation_id=cid, conversation_key=key, record=tx.record)

        try:
            record_id = self.finalizer.commit(form)
        except Exception as e:
            err = make_error(
                code=ErrorCode.FINALIZATION_FAILURE,
                origin=ErrorOrigin.FINALIZER,
                retryable=True,
                dev_message=f"{type(e).__name__}: {e}",
                details={"finalizer": type(self.finalizer).__name__},
                context={"conversation_key": key, "form_type": form.form_type},
                correlation_id=cid,
            )
            app_logger.log_error_event("Flow.FINALIZATION_FAILED", err, conversation_key=key, record=tx.record)
            released = self._release_claim(key, token, cid)
            return self._result(FlowResult(kind="error", error=err, correlation_id=cid), released)

        def _complete(rec: Optional[SessionRecord]) -> Step:
            if rec is None or rec.state.is_terminal:
                return Step(form=None, state=ConversationState.TERMINAL_COMPLETED, outcome=False, write=False)
            return Step(form=None, state=ConversationState.TERMINAL_COMPLETED, outcome=True)

        try:
            done = self._transact(key, _complete, cid, attempts=self.settings.max_write_attempts * 2)
        except RetriesExhausted:
            # the record exists; the claim keeps others from committing it again until it expires
            app_logger.log_flow_event(
                "COMPLETION_WRITE_FAILED",
                {"record_id": record_id},
                correlation_id=cid,
                conversation_key=key,
                level=logging.ERROR,
            )
            done = None

        prompt = prompts.completed(record_id)
        self.notifier.send(key, prompt)
        rec = done.record if done is not None else tx.record
        app_logger.log_flow_event(
            "COMPLETED",
            {"record_id": record_id, "form_type": form.form_type},
            correlation_id=cid,
            conversation_key=key,
            record=rec,
        )
        return self._result(FlowResult(kind="completed", prompt=prompt, record_id=record_id, correlation_id=cid), rec)

    def _release_claim(self, key: str, token: str, cid: str) -> Optional[SessionRecord]:
        def _release(rec: Optional[SessionRecord]) -> Step:
            if rec is None or rec.form is None or rec.form.finalization_claim is None or rec.form.finalization_claim.token != token:
                return Step(form=rec.form if rec else None, state=rec.state if rec else ConversationState.COLLECTING, write=False)
            return Step(form=with_updates(rec.form, finalization_claim=None), state=rec.state)

        try:
            return self._transact(key, _release, cid).record
        except RetriesExhausted:
            app_logger.log_flow_event("CLAIM_RELEASE_FAILED", {}, correlation_id=cid, conversation_key=key, level=logging.WARNING)
            return self.store.read(key)

    def _reprompt(self, key: str, rec: Optional[SessionRecord], cid: str) -> FlowResult:
        if rec is None or rec.form is None:
            return self._result(FlowResult(kind="inactive", correlation_id=cid), rec)
        form = rec.form
        if rec.state == ConversationState.CONFIRM_LINKED_ENTITY:
            prompt = prompts.confirm_entity(form, progress=self.registry.progress(form))
        elif rec.state == ConversationState.CONFIRM_BULK_EXTRACTION:
            prompt = prompts.confirm_bulk(form.staged_extraction, registry=self.registry, form_type=form.form_type)
        else:
            target = form.pending_field or self.registry.next_field(form)
            if target is None:
                prompt = prompts.finalizing()
            else:
                definition = self.registry.get_field(form_type_of(form), target)
                prompt = prompts.request_field(definition, progress=self.registry.progress(form), existing=get_slot(form, target))
        self.notifier.send(key, prompt)
        return self._result(FlowResult(kind="prompt", prompt=prompt, correlation_id=cid), rec)

    # -------------------------------- Plumbing --------------------------------

    def _transact(self, key: str, mutate: Callable[[Optional[SessionRecord]], Step], cid: str, *, attempts: Optional[int] = None) -> TransactionResult:
        return optimistic_transaction(
            self.store,
            key,
            mutate,
            max_attempts=attempts or self.settings.max_write_attempts,
            base_delay_ms=self.settings.retry_base_delay_ms,
            max_delay_ms=self.settings.retry_max_delay_ms,
            sleep=self._sleep,
            correlation_id=cid,
        )

    def _after(self, key: str, tx: TransactionResult, cid: str) -> FlowResult:
        """Log the step's events, then finalize or notify."""
        outcome: _Outcome = tx.outcome
        rec = tx.record
        for name, payload in outcome.events:
            app_logger.log_flow_event(name, payload, correlation_id=cid, conversation_key=key, record=rec)

        if outcome.kind == "inactive":
            if outcome.error:
                app_logger.log_flow_event("INACTIVE", {"error": summarize_for_log(outcome.error)}, correlation_id=cid, conversation_key=key, record=rec)
            return self._result(FlowResult(kind="inactive", error=outcome.error, correlation_id=cid), rec)

        if outcome.finalize:
            return self._finalize(key, cid)

        if outcome.prompt is not None:
            self.notifier.send(key, outcome.prompt)
        return self._result(FlowResult(kind=outcome.kind, prompt=outcome.prompt, error=outcome.error, correlation_id=cid), rec)

    def _conflict(self, key: str, cid: str, exc: RetriesExhausted) -> FlowResult:
        err = make_error(
            code=ErrorCode.VERSION_CONFLICT,
            origin=ErrorOrigin.STORE,
            retryable=True,
            dev_message=str(exc),
            details={"attempts": exc.attempts},
            context={"conversation_key": key},
            correlation_id=cid,
        )
        app_logger.log_error_event("Flow.CONFLICT", err, conversation_key=key)
        return FlowResult(kind="conflict", error=err, correlation_id=cid)

    @staticmethod
    def _result(result: FlowResult, rec: Optional[SessionRecord]) -> FlowResult:
        if rec is None:
            return result
        return FlowResult(
            kind=result.kind,
            prompt=result.prompt,
            record_id=result.record_id,
            error=result.error,
            state=rec.state,
            version=rec.version,
            correlation_id=result.correlation_id,
        )

    def _extract(self, raw_input: Any, input_kind: str, form_type: str, pending_field: Optional[str], cid: str, key: str) -> List[FieldCandidate]:
        extractor = self._extractor_for(input_kind)
        if extractor is None:
            app_logger.log_event("Extractor.NO_EXTRACTOR", {"input_kind": input_kind}, correlation_id=cid, conversation_key=key, level=logging.WARNING)
            return []
        return extractor.extract_candidates(
            raw_input,
            form_type=form_type,
            pending_field=pending_field,
            correlation_id=cid,
            conversation_key=key,
        )

    def _extractor_for(self, input_kind: str) -> Optional[SafeExtractor]:
        ex = self._extractors
        if isinstance(ex, ExtractorRegistry):
            try:
                return ex.get(input_kind)
            except KeyError:
                return None
        if isinstance(ex, Mapping):
            inner = ex.get(input_kind)
            return SafeExtractor(inner, input_kind) if inner is not None else None
        return SafeExtractor(ex, input_kind)


def _claim_expired(claim: FinalizationClaim, ttl: timedelta) -> bool:
    claimed = datetime.fromisoformat(claim.claimed_at.replace("Z", "+00:00"))
    if claimed.tzinfo is None:
        claimed = claimed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - claimed >= ttl
