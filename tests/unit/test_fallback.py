import pytest

from pve_zfs_installer.errors import ToolUnavailable
from pve_zfs_installer.lib.command import CmdResult, CommandError
from pve_zfs_installer.lib.fallback import Strategy, retry_with_backoff, run_chain


def _cmd_error():
    return CommandError(CmdResult(argv=["false"], returncode=1, stdout="", stderr="nope"))


class TestRunChain:
    def test_first_success_wins(self):
        seen = []

        def attempt(name, ok):
            def _run():
                seen.append(name)
                return ok

            return Strategy(name, _run)

        result = run_chain([attempt("a", False), attempt("b", True), attempt("c", True)], label="t")

        assert result.succeeded
        assert result.winner == "b"
        assert result.tried == ["a", "b"]
        assert seen == ["a", "b"]

    def test_raised_errors_are_failed_attempts(self):
        def boom():
            raise _cmd_error()

        def missing():
            raise ToolUnavailable("missing")

        result = run_chain([Strategy("cmd", boom), Strategy("tool", missing)], label="t")

        assert not result.succeeded
        assert result.winner is None
        assert [a.ok for a in result.attempts] == [False, False]
        assert result.attempts[1].error == "missing"

    def test_unexpected_errors_propagate(self):
        def bug():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            run_chain([Strategy("bug", bug)], label="t")


class TestRetryWithBackoff:
    def test_returns_first_success(self):
        sleeps = []
        calls = iter([_cmd_error(), _cmd_error(), "ok"])

        def op():
            item = next(calls)
            if isinstance(item, Exception):
                raise item
            return item

        assert retry_with_backoff(op, attempts=3, delay=1.0, sleep=sleeps.append) == "ok"
        assert sleeps == [1.0, 2.0]

    def test_reraises_last_error(self):
        sleeps = []

        def op():
            raise _cmd_error()

        with pytest.raises(CommandError):
            retry_with_backoff(op, attempts=3, delay=0.5, sleep=sleeps.append)
        assert sleeps == [0.5, 1.0]

    def test_delay_is_capped(self):
        sleeps = []

        def op():
            raise OSError("busy")

        with pytest.raises(OSError):
            retry_with_backoff(op, attempts=4, delay=10.0, backoff=3.0, max_delay=20.0, sleep=sleeps.append)
        assert sleeps == [10.0, 20.0, 20.0]

    def test_other_exceptions_are_not_retried(self):
        sleeps = []

        def op():
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            retry_with_backoff(op, attempts=3, sleep=sleeps.append)
        assert sleeps == []

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            retry_with_backoff(lambda: None, attempts=0)
