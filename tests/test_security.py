import pytest

from chatgate.errors import PathAccessDenied, UnsafeCommandBlocked
from chatgate.security import SafetyChecker


@pytest.fixture
def checker(tmp_path) -> SafetyChecker:
    return SafetyChecker([tmp_path / "project"], temp_paths=["/tmp/"])


def test_blocked_patterns(checker) -> None:
    assert checker.is_command_safe("ls -la") == (True, "")
    ok, reason = checker.is_command_safe("sudo rm -rf /var/lib")
    assert not ok
    assert reason.startswith("Blocked pattern")
    assert not checker.is_command_safe("DD IF=/dev/zero of=/dev/sda")[0]


def test_rm_targets_must_be_allowed(checker, tmp_path) -> None:
    inside = tmp_path / "project" / "build"
    assert checker.is_command_safe(f"rm -r {inside}")[0]
    assert checker.is_command_safe("rm -f /tmp/scratch.txt")[0]
    ok, reason = checker.is_command_safe("rm -r /etc/nginx")
    assert not ok
    assert "/etc/nginx" in reason
    assert not checker.is_command_safe("cd x && rm /opt/data")[0]


def test_path_checks(checker, tmp_path) -> None:
    assert checker.is_path_allowed(str(tmp_path / "project" / "a.py"))
    assert checker.is_path_allowed("/tmp/x")
    assert not checker.is_path_allowed("/etc/passwd")
    assert not checker.is_path_allowed("")


def test_check_tool_raises_typed_vetoes(checker, tmp_path) -> None:
    with pytest.raises(UnsafeCommandBlocked) as exc:
        checker.check_tool("Bash", {"command": "rm -rf ~"})
    assert str(exc.value).startswith("Blocked unsafe command")

    with pytest.raises(PathAccessDenied):
        checker.check_tool("Write", {"file_path": "/etc/hosts"})

    checker.check_tool("Edit", {"file_path": str(tmp_path / "project" / "x.py")})
    checker.check_tool("Glob", {"pattern": "*.py"})
    checker.check_tool("WebFetch", {"url": "http://example.com"})


def test_claude_dir_is_readable_but_not_writable(checker) -> None:
    checker.check_tool("Read", {"file_path": "/opt/team/.claude/settings.json"})
    with pytest.raises(PathAccessDenied):
        checker.check_tool("Write", {"file_path": "/opt/team/.claude/settings.json"})


def test_temp_prefix_cannot_be_escaped_with_dotdot(checker) -> None:
    assert not checker.is_path_allowed("/tmp/../etc/passwd")
    ok, reason = checker.is_command_safe("rm -f /tmp/../etc/hosts")
    assert not ok
    assert "/tmp/../etc/hosts" in reason
    with pytest.raises(PathAccessDenied):
        checker.check_tool("Write", {"file_path": "/tmp/../etc/cron.d/job"})


def test_relative_paths_resolve_against_session_dir(tmp_path, monkeypatch) -> None:
    project = tmp_path / "project"
    elsewhere = tmp_path / "elsewhere"
    project.mkdir()
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    strict = SafetyChecker([project], temp_paths=[])

    assert strict.is_path_allowed("notes.txt", project)
    assert not strict.is_path_allowed("notes.txt")
    assert not strict.is_path_allowed("../elsewhere/notes.txt", project)
    strict.check_tool("Write", {"file_path": "src/app.py"}, project)
    assert strict.is_command_safe("rm -r build", project)[0]
    with pytest.raises(PathAccessDenied):
        strict.check_tool("Write", {"file_path": "notes.txt"}, elsewhere)
