"""Integration tests for MergePipeline: real worktrees, real merges, real builds."""

import asyncio

import pytest
from git import Repo

from swarm_conductor.config import MergeConfig
from swarm_conductor.core.errors import BuildFailure, GateFailure, MergeConflict
from swarm_conductor.core.merge import MergePipeline, is_docs_only
from swarm_conductor.core.models import GateResult, GateType, IssueStatus


def merge_config(build_command=None, skip_docs=True):
    return MergeConfig(build_command=build_command, build_timeout=30, skip_build_for_docs_only=skip_docs)


async def closed_issue(store, isolator, commit, issue_id, files, gates=()):
    """Create, claim, commit `files` in the issue worktree and close it."""
    await store.create_issue(issue_id, f"Issue {issue_id}", required_gates=list(gates))
    path = await isolator.create(issue_id)
    await store.claim(issue_id, f"worker-{issue_id}", path)
    workspace = Repo(path)
    for relpath, content in files.items():
        commit(workspace, relpath, content, f"{issue_id}: {relpath}")
    await store.close(issue_id, "done")
    for gate in gates:
        await store.record_gate_result(GateResult(GateType.parse(gate), issue_id, passed=True, summary="ok"))
    return path


def test_docs_only_detection():
    assert is_docs_only(["README.md", "docs/guide.markdown"])
    assert not is_docs_only(["README.md", "app.py"])
    assert not is_docs_only([])


async def test_clean_merge_archives_and_cleans_up(store, git_repo, isolator, commit):
    path = await closed_issue(store, isolator, commit, "A", {"feature.py": "x = 1\n"}, gates=["test-runner"])
    pipeline = MergePipeline(store, isolator, merge_config("test -f feature.py"))

    result = await pipeline.merge("A")

    assert result.build_ran is True
    assert result.changed_files == ("feature.py",)
    assert git_repo.head.commit.hexsha == result.head_after
    assert (isolator.root / "feature.py").exists()
    issue = await store.get_issue("A")
    assert issue.status is IssueStatus.CLOSED
    assert issue.archived is True
    assert not isolator.path_for("A").exists()
    assert path not in git_repo.git.worktree("list")
    assert "feature/A" not in {head.name for head in git_repo.heads}


async def test_conflict_aborts_and_leaves_issue_closed(store, git_repo, isolator, commit):
    path = await closed_issue(store, isolator, commit, "X", {"app.py": "VALUE = 2\n"})
    trunk_head = commit(git_repo, "app.py", "VALUE = 3\n", "Concurrent change on trunk")
    pipeline = MergePipeline(store, isolator, merge_config())

    with pytest.raises(MergeConflict) as excinfo:
        await pipeline.merge("X")

    assert excinfo.value.branch == "feature/X"
    assert git_repo.head.commit.hexsha == trunk_head
    assert not git_repo.is_dirty()
    assert not (isolator.root / ".git" / "MERGE_HEAD").exists()
    issue = await store.get_issue("X")
    assert issue.status is IssueStatus.CLOSED
    assert issue.archived is False
    assert isolator.path_for("X").exists()
    assert path == issue.workspace_path


async def test_failed_build_resets_trunk_and_reopens(store, git_repo, isolator, commit):
    await closed_issue(store, isolator, commit, "B", {"feature.py": "x = 1\n"})
    head_before = git_repo.head.commit.hexsha
    pipeline = MergePipeline(store, isolator, merge_config("echo compile error; exit 1"))

    with pytest.raises(BuildFailure) as excinfo:
        await pipeline.merge("B")

    assert "compile error" in excinfo.value.output
    assert git_repo.head.commit.hexsha == head_before
    assert not (isolator.root / "feature.py").exists()
    issue = await store.get_issue("B")
    assert issue.status is IssueStatus.OPEN
    assert issue.reopen_reason.startswith("post-merge build failed")
    assert isolator.owner_of(isolator.path_for("B")) is None
    assert "feature/B" in {head.name for head in git_repo.heads}


async def test_failed_build_escalates_after_max_reopens(store, isolator, commit):
    await closed_issue(store, isolator, commit, "B", {"feature.py": "x = 1\n"})
    pipeline = MergePipeline(store, isolator, merge_config("exit 1"), max_reopens=0)

    with pytest.raises(BuildFailure):
        await pipeline.merge("B")

    assert await store.get_status("B") is IssueStatus.BLOCKED


async def test_docs_only_change_skips_build(store, git_repo, isolator, commit):
    await closed_issue(store, isolator, commit, "D", {"README.md": "# Project\n"})
    pipeline = MergePipeline(store, isolator, merge_config("exit 1"))

    result = await pipeline.merge("D")

    assert result.build_ran is False
    assert (await store.get_issue("D")).archived is True


async def test_docs_only_build_runs_when_not_skipping(store, isolator, commit):
    await closed_issue(store, isolator, commit, "D", {"README.md": "# Project\n"})
    pipeline = MergePipeline(store, isolator, merge_config("exit 1", skip_docs=False))

    with pytest.raises(BuildFailure):
        await pipeline.merge("D")


async def test_refuses_merge_without_passing_gates(store, git_repo, isolator):
    await store.create_issue("H", "needs review", required_gates=["codex-review"])
    path = await isolator.create("H")
    await store.claim("H", "worker-H", path)
    await store.close("H")
    await store.record_gate_result(GateResult(GateType.CODEX_REVIEW, "H", passed=False, summary="nope"))
    head_before = git_repo.head.commit.hexsha
    pipeline = MergePipeline(store, isolator, merge_config())

    with pytest.raises(GateFailure, match="codex-review"):
        await pipeline.merge("H")

    assert git_repo.head.commit.hexsha == head_before
    assert (await store.get_issue("H")).archived is False


async def test_refuses_unclosed_issue(store, isolator):
    await store.create_issue("O", "still open")
    pipeline = MergePipeline(store, isolator, merge_config())

    with pytest.raises(GateFailure, match="not mergeable"):
        await pipeline.merge("O")


async def test_merges_are_sequential(store, git_repo, isolator, commit):
    await closed_issue(store, isolator, commit, "M1", {"one.py": "1\n"})
    await closed_issue(store, isolator, commit, "M2", {"two.py": "2\n"})
    pipeline = MergePipeline(store, isolator, merge_config("test -f one.py -o -f two.py"))

    results = await asyncio.gather(pipeline.merge("M1"), pipeline.merge("M2"))

    assert results[1].head_before == results[0].head_after
    assert (isolator.root / "one.py").exists() and (isolator.root / "two.py").exists()
