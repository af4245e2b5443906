"""Tag and folder membership updates on drafts.

:func:`apply_membership` is an upsert keyed by categorizer identity: a
draft never ends up holding the same tag or folder twice, and unrelated
memberships are left alone.  :func:`replace_membership` is the blunt
variant used when importing straight into a categorizer.
"""

from __future__ import annotations

from folio.models import Categorizer, PaperDraft


def apply_membership(
    drafts: list[PaperDraft], categorizer: Categorizer, kind: str
) -> list[PaperDraft]:
    """Upsert *categorizer* into every draft's *kind* memberships (in place)."""
    for draft in drafts:
        kept = [c for c in draft.memberships(kind) if c.id != categorizer.id]
        kept.append(_membership(categorizer, kind))
        draft.set_memberships(kind, kept)
    return drafts


def replace_membership(
    drafts: list[PaperDraft], categorizer: Categorizer, kind: str
) -> list[PaperDraft]:
    """Discard all *kind* memberships and install *categorizer* alone (in place)."""
    for draft in drafts:
        draft.set_memberships(kind, [_membership(categorizer, kind)])
    return drafts


def _membership(categorizer: Categorizer, kind: str) -> Categorizer:
    if categorizer.kind == kind:
        return categorizer.copy()
    return Categorizer(name=categorizer.name, kind=kind, id=categorizer.id, color=categorizer.color)
