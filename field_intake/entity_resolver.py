"""
Project: Field Intake
File: entity_resolver.py
Author: roger erismann

Linked-entity sub-flow: once the identifying field (e.g. an equipment code)
is newly completed and nothing is linked yet, look the code up and stage the
entity for confirmation. The entity only counts for finalization after the
user confirms it (entity_confirmed=True).

- found      -> entity staged, caller moves to CONFIRM_LINKED_ENTITY
- not found  -> identifying slot reset to empty, caller re-prompts for it
- confirm    -> identifying slot user_confirmed / 100, entity_confirmed=True
- reject     -> entity cleared, identifying slot reset, pending = identifying field

All functions are pure over FormState; the only outside call is the
read-only EntityLookup.

Methods & Classes
- Resolution(found, form, entity_id)
- class LinkedEntityResolver(lookup, registry)
  - needs_lookup(form, updated_fields=None) -> bool
  - resolve(form, *, correlation_id=None, conversation_key=None) -> Resolution
  - confirm(form) -> FormState
  - reject(form) -> FormState

Dependencies
- Internal: form_state, schema_registry, ports.EntityLookup, app_logger
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from field_intake import app_logger
from field_intake.form_state import FormState, confirm_slot, form_type_of, get_slot, reset_slot, with_updates
from field_intake.ports import EntityLookup
from field_intake.schema_registry import SchemaRegistry, default_registry


@dataclass(frozen=True)
class Resolution:
    found: bool
    form: FormState
    entity_id: Optional[str] = None
    lookup_failed: bool = False


class LinkedEntityResolver:
    def __init__(self, lookup: EntityLookup, registry: Optional[SchemaRegistry] = None):
        self._lookup = lookup
        self._registry = registry or default_registry()

    def _identifying(self, form: FormState) -> Optional[str]:
        ft = form_type_of(form)
        if not self._registry.requires_entity(ft):
            return None
        return self._registry.identifying_field(ft)

    def needs_lookup(self, form: FormState, updated_fields: Optional[Iterable[str]] = None) -> bool:
        """
        True when the identifying field is complete and no entity is linked.

        A failed lookup clears the slot, so an unlinked complete code is always
        a new one; `updated_fields` narrows the check to this step's changes.
        """
        name = self._identifying(form)
        if name is None or form.linked_entity_id:
            return False
        if updated_fields is not None and name not in set(updated_fields):
            return False
        return get_slot(form, name).complete

    def resolve(
        self,
        form: FormState,
        *,
        correlation_id: Optional[str] = None,
        conversation_key: Optional[str] = None,
    ) -> Resolution:
        name = self._identifying(form)
        if name is None:
            return Resolution(found=False, form=form)
        code = get_slot(form, name).value or ""

        lookup_failed = False
        try:
            entity = self._lookup.find_by_code(code)
        except Exception as e:
            # treated as not found for this step
            lookup_failed = True
            entity = None
            app_logger.log_event(
                "Entity.LOOKUP_FAILED",
                {"code": code, "error": f"{type(e).__name__}: {e}"},
                correlation_id=correlation_id,
                conversation_key=conversation_key,
                level=logging.WARNING,
            )

        if not entity:
            app_logger.log_event(
                "Entity.NOT_FOUND",
                {"code": code, "lookup_failed": lookup_failed},
                correlation_id=correlation_id,
                conversation_key=conversation_key,
            )
            cleared = reset_slot(form, name)
            return Resolution(found=False, form=cleared, lookup_failed=lookup_failed)

        entity_id = str(entity.get("id") or code)
        staged = with_updates(
            form,
            linked_entity_id=entity_id,
            linked_entity_data=dict(entity),
            entity_confirmed=False,
        )
        app_logger.log_event(
            "Entity.STAGED",
            {"code": code, "entity_id": entity_id},
            correlation_id=correlation_id,
            conversation_key=conversation_key,
        )
        return Resolution(found=True, form=staged, entity_id=entity_id)

    def confirm(self, form: FormState) -> FormState:
        name = self._identifying(form)
        if name is None or not form.linked_entity_id:
            return form
        confirmed = confirm_slot(form, name)
        return with_updates(confirmed, entity_confirmed=True)

    def reject(self, form: FormState) -> FormState:
        name = self._identifying(form)
        cleared = with_updates(
            form,
            linked_entity_id=None,
            linked_entity_data=None,
            entity_confirmed=False,
        )
        if name is None:
            return cleared
        return with_updates(reset_slot(cleared, name), pending_field=name)
