import pytest

from phasegate.artifacts import ArtifactStore
from phasegate.contracts import Artifact
from phasegate.errors import ArtifactDependencyMissing, ArtifactNotFound


def _draft(iteration, depends_on=None):
    return Artifact.create(
        kind="draft",
        content=f"draft v{iteration}",
        step_id="write",
        phase_id="p1",
        iteration=iteration,
        depends_on=depends_on,
    )


def test_artifact_ids_are_content_addressed():
    assert _draft(1).artifact_id == _draft(1).artifact_id
    assert _draft(1).artifact_id != _draft(2).artifact_id

    seed = Artifact.seed("brief", "todo app")
    assert seed.step_id == "input"
    assert seed.phase_id is None
    assert seed.iteration == 0


def test_put_and_get():
    store = ArtifactStore("run")
    seed = Artifact.seed("brief", "todo")
    draft = _draft(1, [seed.artifact_id])

    store.put(seed)
    assert store.put(draft) == draft.artifact_id

    assert store.get(draft.artifact_id) == draft
    assert draft.artifact_id in store
    assert store.sequence_of(seed.artifact_id) == 1
    assert store.sequence_of(draft.artifact_id) == 2
    assert len(store) == 2
    assert store.kinds() == {"brief", "draft"}

    with pytest.raises(ArtifactNotFound):
        store.get("nope")


def test_put_is_idempotent():
    store = ArtifactStore()
    store.put(_draft(1))
    store.put(_draft(1))

    assert len(store) == 1


def test_dependencies_must_exist():
    store = ArtifactStore()

    with pytest.raises(ArtifactDependencyMissing) as exc:
        store.put(_draft(1, ["missing-id"]))
    assert exc.value.dependency == "missing-id"
    assert len(store) == 0


def test_retry_shadows_but_keeps_prior_iterations():
    store = ArtifactStore()
    store.put(_draft(1))
    store.put(_draft(2))

    assert store.latest("draft").iteration == 2
    assert store.get_by_iteration("draft", "p1", 1).content == "draft v1"
    assert [a.iteration for a in store.list_by_kind_and_phase("draft", "p1")] == [1, 2]
    assert [a.content for a in store.current_view("p1")] == ["draft v2"]

    with pytest.raises(ArtifactNotFound):
        store.get_by_iteration("draft", "p1", 3)
    with pytest.raises(ArtifactDependencyMissing):
        store.latest("code")


def test_current_view_is_in_store_order():
    store = ArtifactStore()
    notes = Artifact.create(kind="notes", content="n", step_id="a", phase_id="p1", iteration=1)
    store.put(notes)
    store.put(_draft(1))
    store.put(_draft(2))
    store.put(Artifact.create(kind="other", content="o", step_id="b", phase_id="p2", iteration=1))

    assert [a.kind for a in store.current_view("p1")] == ["notes", "draft"]
