import json
from collections.abc import AsyncIterator
from pathlib import Path

from click.testing import CliRunner

from featurerun.cli import cli
from featurerun.config import AgentConfig, FeatureRunConfig
from featurerun.engine import (
    AgentEvent,
    AgentTransport,
    ExecutionEngine,
    ExecutionRequest,
    TerminalSummary,
    TextFragment,
)
from featurerun.state import FeatureStatus, FeatureStore, InterruptReason


class FakeTransport(AgentTransport):
    def __init__(self, phase: str, failing: set[str]) -> None:
        self.phase = phase
        self.failing = failing

    async def connect(self) -> None:
        if self.phase in self.failing:
            raise OSError(f"{self.phase} agent offline")

    async def send(self, prompt: str) -> None:
        _ = prompt

    async def stream_events(self) -> AsyncIterator[AgentEvent]:
        yield TextFragment(f"{self.phase} complete")
        if self.phase == "pr":
            yield TextFragment(" https://github.com/acme/app/pull/9")
        yield TerminalSummary(turns=2, cost_usd=0.05, input_tokens=10, output_tokens=5)

    async def disconnect(self) -> None:
        return None


def _engine_factory(calls: list[str], failing: set[str] | None = None):
    blocked = failing if failing is not None else set()

    def transport_factory(request: ExecutionRequest, config: AgentConfig) -> AgentTransport:
        phase = request.context.phase_name or ""
        calls.append(phase)
        return FakeTransport(phase, blocked)

    def factory(config: FeatureRunConfig, repo_root: Path) -> ExecutionEngine:
        _ = repo_root
        return ExecutionEngine(config.agent, transport_factory=transport_factory)

    return factory


def _invoke(runner: CliRunner, repo: Path, args: list[str], factory=None):
    obj = {"engine_factory": factory} if factory else {}
    return runner.invoke(cli, ["--repo", str(repo), *args], obj=obj)


def test_init_plan_run_status_flow(tmp_path: Path) -> None:
    runner = CliRunner()
    calls: list[str] = []
    factory = _engine_factory(calls)

    init_result = _invoke(runner, tmp_path, ["init"])
    assert init_result.exit_code == 0, init_result.output
    assert "Initialized featurerun" in init_result.output
    assert (tmp_path / ".featurerun" / "config.toml").is_file()

    again = _invoke(runner, tmp_path, ["init"])
    assert again.exit_code != 0
    assert "already initialized" in again.output

    plan_result = _invoke(runner, tmp_path, ["plan", "User Auth", "-d", "Sign users in."])
    assert plan_result.exit_code == 0, plan_result.output
    assert "0001_user-auth" in plan_result.output

    dry_run = _invoke(runner, tmp_path, ["run", "user-auth", "--dry-run"], factory)
    assert dry_run.exit_code == 0, dry_run.output
    assert "observe" in dry_run.output
    assert calls == []

    run_result = _invoke(runner, tmp_path, ["run", "user-auth"], factory)
    assert run_result.exit_code == 0, run_result.output
    assert "[1/6] observe" in run_result.output
    assert "completed" in run_result.output
    assert calls == ["observe", "build", "test", "verification", "review", "pr"]

    status_result = _invoke(runner, tmp_path, ["status", "0001"])
    assert status_result.exit_code == 0, status_result.output
    assert "Status: completed" in status_result.output
    assert "https://github.com/acme/app/pull/9" in status_result.output

    json_result = _invoke(runner, tmp_path, ["status", "user-auth", "--json"])
    payload = json.loads(json_result.output)
    assert payload["totalStats"]["turns"] == 12
    assert payload["pullRequest"]["number"] == 9

    list_result = _invoke(runner, tmp_path, ["list"])
    assert "0001_user-auth" in list_result.output
    assert "6/6" in list_result.output

    summary_result = _invoke(runner, tmp_path, ["status", "--json"])
    assert json.loads(summary_result.output)["completed"] == 1

    rerun = _invoke(runner, tmp_path, ["run", "user-auth"], factory)
    assert rerun.exit_code == 0
    assert "already completed" in rerun.output


def test_failed_run_exits_non_zero_and_resumes(tmp_path: Path) -> None:
    runner = CliRunner()
    calls: list[str] = []
    _invoke(runner, tmp_path, ["init"])
    _invoke(runner, tmp_path, ["plan", "billing"])

    failed = _invoke(runner, tmp_path, ["run", "billing"], _engine_factory(calls, {"test"}))
    assert failed.exit_code != 0
    assert "test agent offline" in failed.output
    assert calls == ["observe", "build", "test"]

    state = FeatureStore.for_repo(tmp_path).load("billing")
    assert state.status is FeatureStatus.FAILED
    assert state.resume.next_phase == "test"

    calls.clear()
    resumed = _invoke(runner, tmp_path, ["run", "billing", "--resume"], _engine_factory(calls))
    assert resumed.exit_code == 0, resumed.output
    assert calls == ["test", "verification", "review", "pr"]


def test_interrupt_repairs_in_progress_feature(tmp_path: Path) -> None:
    runner = CliRunner()
    calls: list[str] = []
    _invoke(runner, tmp_path, ["init"])
    _invoke(runner, tmp_path, ["plan", "search"])
    store = FeatureStore.for_repo(tmp_path)
    state = store.load("search")
    state.start_execution()
    store.save(state)

    refused = _invoke(runner, tmp_path, ["run", "search"], _engine_factory(calls))
    assert refused.exit_code == 0
    assert "already in progress" in refused.output
    assert calls == []

    interrupted = _invoke(runner, tmp_path, ["interrupt", "search", "--reason", "systemShutdown"])
    assert interrupted.exit_code == 0, interrupted.output
    repaired = store.load("search")
    assert repaired.resume.can_resume is True
    assert repaired.resume.interrupt_reason is InterruptReason.SYSTEM_SHUTDOWN

    resumed = _invoke(runner, tmp_path, ["run", "search", "--resume"], _engine_factory(calls))
    assert resumed.exit_code == 0, resumed.output
    assert calls[0] == "observe"


def test_run_records_git_branch(tmp_path: Path) -> None:
    runner = CliRunner()
    calls: list[str] = []
    _invoke(runner, tmp_path, ["init"])
    _invoke(runner, tmp_path, ["plan", "export"])

    partial = _invoke(runner, tmp_path, ["run", "export", "--branch", "feature/export"])
    assert partial.exit_code != 0
    assert "--base-branch" in partial.output

    result = _invoke(
        runner,
        tmp_path,
        [
            "run",
            "export",
            "--branch",
            "feature/export",
            "--base-branch",
            "main",
            "--base-commit",
            "0a1b2c3",
        ],
        _engine_factory(calls),
    )
    assert result.exit_code == 0, result.output

    status = _invoke(runner, tmp_path, ["status", "export", "--json"])
    payload = json.loads(status.output)
    assert payload["git"] == {
        "worktreePath": str(tmp_path.resolve()),
        "branch": "feature/export",
        "baseBranch": "main",
        "baseCommit": "0a1b2c3",
    }


def test_commands_require_init(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), tmp_path, ["list"])
    assert result.exit_code != 0
    assert "featurerun init" in result.output


def test_unknown_feature(tmp_path: Path) -> None:
    runner = CliRunner()
    _invoke(runner, tmp_path, ["init"])
    result = _invoke(runner, tmp_path, ["status", "nope"])
    assert result.exit_code != 0
    assert "not found" in result.output
