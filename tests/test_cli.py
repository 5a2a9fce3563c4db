import sys

import yaml
from typer.testing import CliRunner

from nfslock import __version__, acquire
from nfslock.cli import app

runner = CliRunner()


def test_cli_supports_version_flag():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.strip() == f"nfslock {__version__}"


def test_cli_supports_short_version_flag():
    result = runner.invoke(app, ["-V"])
    assert result.exit_code == 0
    assert result.stdout.strip() == f"nfslock {__version__}"


def test_status_reports_unlocked_and_owners(target):
    result = runner.invoke(app, ["status", str(target)])
    assert result.exit_code == 0
    assert "unlocked" in result.stdout

    with acquire(target, "SH"):
        result = runner.invoke(app, ["status", str(target)])
    assert result.exit_code == 0
    assert "locked by 1 owner(s)" in result.stdout
    assert "SHARED" in result.stdout


def test_run_holds_lock_and_propagates_exit_code(target):
    marker = target.with_name("seen")
    script = (
        "import os, sys; "
        f"open({str(marker)!r}, 'w').write(str(os.path.exists({str(target) + '.NFSLock'!r}))); "
        "sys.exit(3)"
    )
    result = runner.invoke(app, ["run", str(target), "--", sys.executable, "-c", script])

    assert result.exit_code == 3
    assert marker.read_text() == "True"
    assert not target.with_name("T.NFSLock").exists()


def test_run_fails_when_lock_is_held(target):
    with acquire(target):
        result = runner.invoke(
            app, ["run", "--nonblocking", str(target), "--", sys.executable, "-c", "pass"]
        )
    assert result.exit_code == 1


def test_uncache_command(target):
    target.write_text("data", encoding="utf-8")
    result = runner.invoke(app, ["uncache", str(target), str(target.with_name("missing"))])
    assert result.exit_code == 0
    assert sorted(p.name for p in target.parent.iterdir()) == ["T"]


def test_config_option_sets_lock_extension(tmp_path, target):
    config_path = tmp_path / "custom.yaml"
    config_path.write_text(yaml.safe_dump({"lock": {"lock_extension": ".lck"}}), encoding="utf-8")
    lck = str(target) + ".lck"
    script = f"import os, sys; sys.exit(0 if os.path.exists({lck!r}) else 5)"
    result = runner.invoke(
        app,
        ["--config", str(config_path), "run", str(target), "--", sys.executable, "-c", script],
    )
    assert result.exit_code == 0
    assert not target.with_name("T.lck").exists()


def test_status_lists_stray_claim_tokens(target):
    with acquire(target):
        target.with_name("T.NFSLock.claim.ghost.1.abc").write_text("", encoding="utf-8")
        result = runner.invoke(app, ["status", str(target)])
    assert result.exit_code == 0
    assert "1 claim token(s) not recorded as owners: T.NFSLock.claim.ghost.1.abc" in result.stdout
