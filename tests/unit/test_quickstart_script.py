"""Unit tests for scripts/quickstart.py."""

from __future__ import annotations

import importlib.util
import json
import sys
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from idp_setup.exceptions import StackNotReady
from idp_setup.models import StackInfo, StackOutputs
from idp_setup.provision import ProvisionContext
from idp_setup.report import PipelineReport, passed, run_step
from idp_setup.settings import Settings


def _load_module() -> Any:
    repo_root = Path(__file__).resolve().parents[2]
    spec = importlib.util.spec_from_file_location(
        "quickstart_script", repo_root / "scripts" / "quickstart.py"
    )
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


quickstart = _load_module()
_REGION = "eu-west-2"
_STACK_ID = f"arn:aws:cloudformation:{_REGION}:123456789012:stack/backstage-idp/abc"


def _context(platform: str) -> ProvisionContext:
    stack = StackInfo(
        name="backstage-idp",
        stack_id=_STACK_ID,
        status="CREATE_COMPLETE",
        outputs=StackOutputs(
            "backstage-idp",
            {
                "EKSClusterName": "platform-cluster",
                "ECRRepositoryUri": "123456789012.dkr.ecr.eu-west-2.amazonaws.com/backstage",
            },
        ),
    )
    return ProvisionContext(
        stack=stack,
        region=_REGION,
        account_id="123456789012",
        platform=platform,
        settings=Settings(),
        workdir=Path.cwd(),
    )


@pytest.fixture
def wired(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    """Replace AWS and CLI wiring; record what run_provisioning received."""
    seen: dict[str, Any] = {}
    monkeypatch.setattr(quickstart, "resolve_region", lambda: _REGION)
    monkeypatch.setattr(quickstart, "build_dependencies", lambda region, settings: object())

    def _run(stack_name: str, **kwargs: Any) -> ProvisionContext:
        seen["stack_name"] = stack_name
        seen.update(kwargs)
        report: PipelineReport = kwargs["report"]
        run_step(report, "await-infrastructure", lambda: passed(status="CREATE_COMPLETE"))
        return _context(kwargs["platform"])

    monkeypatch.setattr(quickstart, "run_provisioning", _run)
    return seen


def test_parse_args_defaults() -> None:
    args = quickstart.parse_args(["backstage-idp"])
    assert args.stack_name == "backstage-idp"
    assert args.platform is None
    assert args.step == "all"
    assert args.report is None


def test_parse_args_platform_and_step() -> None:
    args = quickstart.parse_args(["backstage-idp", "linux/arm64", "--step", "build-image"])
    assert args.platform == "linux/arm64"
    assert args.step == "build-image"


@pytest.mark.parametrize(
    "argv",
    [[], ["   "], ["backstage-idp", "--step", "nope"]],
)
def test_parse_args_usage_errors_exit_one(argv: list[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        quickstart.parse_args(argv)
    assert exc_info.value.code == 1


def test_main_success_prints_access_instructions(
    wired: dict[str, Any], capsys: pytest.CaptureFixture[str]
) -> None:
    assert quickstart.main(["backstage-idp"]) == 0

    assert wired["stack_name"] == "backstage-idp"
    assert wired["platform"] == "linux/amd64"
    assert wired["step"] == "all"
    out = capsys.readouterr().out
    assert "Backstage IDP setup complete" in out
    assert "kubectl port-forward svc/backstage 7007:7007 -n backstage" in out
    assert "Graviton" not in out


def test_main_passes_alternate_platform(
    wired: dict[str, Any], capsys: pytest.CaptureFixture[str]
) -> None:
    assert quickstart.main(["backstage-idp", "linux/arm64", "--step", "deploy-release"]) == 0

    assert wired["platform"] == "linux/arm64"
    out = capsys.readouterr().out
    assert "Step deploy-release complete" in out
    assert "Graviton" in out


def test_main_writes_report(wired: dict[str, Any], tmp_path: Path) -> None:
    path = tmp_path / "provision.json"

    assert quickstart.main(["backstage-idp", "--report", str(path)]) == 0

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["workflow"] == "provisioning"
    assert [entry["step"] for entry in payload["steps"]] == ["await-infrastructure"]


def test_main_failure_exits_one_and_still_writes_report(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setattr(quickstart, "resolve_region", lambda: _REGION)
    monkeypatch.setattr(quickstart, "build_dependencies", lambda region, settings: object())

    def _fail(stack_name: str, **kwargs: Any) -> ProvisionContext:
        def _raise() -> Any:
            raise StackNotReady(stack_name, "Stack backstage-idp is ROLLBACK_COMPLETE")

        run_step(kwargs["report"], "await-infrastructure", _raise)
        raise AssertionError("unreachable")

    monkeypatch.setattr(quickstart, "run_provisioning", _fail)
    path = tmp_path / "provision.json"

    assert quickstart.main(["backstage-idp", "--report", str(path)]) == 1

    assert "Provisioning failed" in caplog.text
    payload = json.loads(path.read_text(encoding="utf-8"))
    (entry,) = payload["steps"]
    assert entry["status"] == "failed"
    assert entry["details"]["errorType"] == "StackNotReady"


def test_invalid_setting_override_exits_one(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("IDP_STACK_POLL_INTERVAL", "often")
    run = MagicMock()
    monkeypatch.setattr(quickstart, "run_provisioning", run)
    path = tmp_path / "provision.json"

    assert quickstart.main(["backstage-idp", "--report", str(path)]) == 1

    assert "Provisioning failed: IDP_STACK_POLL_INTERVAL must be a number" in caplog.text
    run.assert_not_called()
    assert json.loads(path.read_text(encoding="utf-8"))["steps"] == []
