import re

import pytest

from chatgate.plan.artifacts import PlanArtifactStore, split_front_matter


def test_create_names_and_front_matter(tmp_path) -> None:
    store = PlanArtifactStore(tmp_path / "plans")
    ref = store.create("# Plan\n\n1. Do it", session_id="ses_abc")

    assert re.fullmatch(r"[a-z]+-[a-z]+-[a-z]+\.md", ref)
    raw = store.read(ref)
    head, body = split_front_matter(raw)
    assert "session_id: ses_abc" in head
    assert "status: draft" in head
    assert body == "# Plan\n\n1. Do it"
    assert store.body(ref) == body


def test_update_replaces_body_text(tmp_path) -> None:
    store = PlanArtifactStore(tmp_path)
    ref = store.create("step one\nstep one again")

    assert store.update(ref, "one", "1") == "step 1\nstep one again"
    assert store.update(ref, "one", "1", replace_all=True) == "step 1\nstep 1 again"
    assert store.read(ref).startswith("---\n")

    with pytest.raises(ValueError):
        store.update(ref, "missing", "x")
    with pytest.raises(ValueError):
        store.update(ref, "same", "same")


def test_write_keeps_front_matter(tmp_path) -> None:
    store = PlanArtifactStore(tmp_path)
    ref = store.create("v1", session_id="ses_1")
    store.write(ref, "v2")
    assert "session_id: ses_1" in store.read(ref)
    assert store.body(ref) == "v2"


def test_refs_cannot_escape_the_plans_dir(tmp_path) -> None:
    store = PlanArtifactStore(tmp_path)
    with pytest.raises(ValueError):
        store.path("../secrets.md")
    assert not store.exists("../secrets.md")
    with pytest.raises(FileNotFoundError):
        store.read("missing.md")
