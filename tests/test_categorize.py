"""Tests for folio.categorize — membership upserts on drafts."""

from folio.categorize import apply_membership, replace_membership
from folio.models import FOLDER, TAG, Categorizer, PaperDraft


class TestApplyMembership:
    def test_adds_once(self):
        tag = Categorizer("ml")
        drafts = [PaperDraft(id="a"), PaperDraft(id="b")]
        apply_membership(drafts, tag, TAG)
        apply_membership(drafts, tag, TAG)
        for d in drafts:
            assert [t.id for t in d.tags] == [tag.id]

    def test_keeps_other_memberships(self):
        other = Categorizer("cv")
        draft = PaperDraft(tags=[other])
        apply_membership([draft], Categorizer("ml"), TAG)
        assert [t.name for t in draft.tags] == ["cv", "ml"]

    def test_renamed_categorizer_replaces_by_id(self):
        tag = Categorizer("ml")
        draft = PaperDraft(tags=[tag.copy()])
        renamed = Categorizer("machine-learning", id=tag.id)
        apply_membership([draft], renamed, TAG)
        assert [t.name for t in draft.tags] == ["machine-learning"]

    def test_folder_kind(self):
        draft = PaperDraft()
        apply_membership([draft], Categorizer("thesis"), FOLDER)
        assert draft.tags == []
        assert draft.folders[0].kind == FOLDER

    def test_membership_is_a_copy(self):
        tag = Categorizer("ml")
        draft = PaperDraft()
        apply_membership([draft], tag, TAG)
        draft.tags[0].name = "changed"
        assert tag.name == "ml"


class TestReplaceMembership:
    def test_replaces_all_of_kind(self):
        draft = PaperDraft(tags=[Categorizer("a"), Categorizer("b")], folders=[Categorizer("f", FOLDER)])
        replace_membership([draft], Categorizer("only"), TAG)
        assert [t.name for t in draft.tags] == ["only"]
        assert [f.name for f in draft.folders] == ["f"]
