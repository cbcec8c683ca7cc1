from __future__ import annotations

import logging
import re
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from cmbump.src.locator import ProcessDetection, ProcessLocator, format_cmdline

SELF_PID = 4242


def fake_process(pid: int, cmdline: list[str] | None, ppid: int = 1) -> SimpleNamespace:
    return SimpleNamespace(info={"pid": pid, "ppid": ppid, "cmdline": cmdline})


def process_table(*processes: SimpleNamespace) -> MagicMock:
    return MagicMock(side_effect=lambda attrs: iter(processes))


def pattern_locator(pattern: str, parent: ProcessDetection | None = None) -> ProcessLocator:
    return ProcessLocator(ProcessDetection(pattern=re.compile(pattern)), parent, self_pid=SELF_PID)


def test_detection_requires_exactly_one_method() -> None:
    with pytest.raises(ValueError):
        ProcessDetection()
    with pytest.raises(ValueError):
        ProcessDetection(pid=1, pattern=re.compile("x"))


def test_format_cmdline_joins_and_trims() -> None:
    assert format_cmdline(["haproxy", "-f", "/etc/haproxy.cfg", ""]) == "haproxy -f /etc/haproxy.cfg"
    assert format_cmdline([]) == ""
    assert format_cmdline(None) == ""


def test_fixed_pid_never_scans() -> None:
    locator = ProcessLocator(ProcessDetection(pid=99), self_pid=SELF_PID)

    with patch("cmbump.src.locator.psutil.process_iter") as process_iter:
        assert locator.resolve() == 99

    process_iter.assert_not_called()


def test_pattern_matches_substring_of_joined_cmdline() -> None:
    locator = pattern_locator("haproxy -f")
    table = process_table(
        fake_process(1, ["/bin/sh"]),
        fake_process(7, ["/usr/sbin/haproxy", "-f", "/etc/haproxy/haproxy.cfg"]),
    )

    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() == 7


def test_pattern_is_case_sensitive() -> None:
    locator = pattern_locator("HAPROXY")
    table = process_table(fake_process(7, ["haproxy"]))

    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() is None


def test_no_match_returns_none() -> None:
    locator = pattern_locator("nginx")
    table = process_table(fake_process(1, ["/pause"]), fake_process(2, None))

    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() is None


def test_multiple_matches_choose_lowest_pid(caplog: pytest.LogCaptureFixture) -> None:
    locator = pattern_locator("nginx: worker")
    table = process_table(
        fake_process(31, ["nginx: worker process"]),
        fake_process(12, ["nginx: worker process"]),
        fake_process(20, ["nginx: worker process"]),
    )

    with patch("cmbump.src.locator.psutil.process_iter", table):
        with caplog.at_level(logging.WARNING):
            assert locator.resolve() == 12

    assert "3 processes match the target pattern" in caplog.text
    assert "12, 20, 31" in caplog.text


def test_own_process_is_never_selected() -> None:
    locator = pattern_locator("python")
    table = process_table(fake_process(SELF_PID, ["python", "-m", "cmbump.src"]))

    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() is None


def test_parent_pid_restricts_candidates() -> None:
    locator = pattern_locator("worker", ProcessDetection(pid=10))
    table = process_table(
        fake_process(5, ["worker"], ppid=1),
        fake_process(11, ["worker"], ppid=10),
    )

    with patch("cmbump.src.locator.psutil.process_iter", table), patch(
        "cmbump.src.locator.psutil.pid_exists", return_value=True
    ):
        assert locator.resolve() == 11


def test_parent_pid_zero_always_matches() -> None:
    locator = pattern_locator("init", ProcessDetection(pid=0))
    table = process_table(fake_process(1, ["init"], ppid=0), fake_process(2, ["init"], ppid=1))

    with patch("cmbump.src.locator.psutil.process_iter", table), patch(
        "cmbump.src.locator.psutil.pid_exists"
    ) as pid_exists:
        assert locator.resolve() == 1

    pid_exists.assert_not_called()


def test_missing_parent_pid_resolves_nothing() -> None:
    locator = pattern_locator("worker", ProcessDetection(pid=10))

    with patch("cmbump.src.locator.psutil.pid_exists", return_value=False), patch(
        "cmbump.src.locator.psutil.process_iter"
    ) as process_iter:
        assert locator.resolve() is None

    process_iter.assert_not_called()


def test_parent_pattern_is_resolved_first() -> None:
    locator = pattern_locator("worker", ProcessDetection(pattern=re.compile("^supervisord")))
    table = process_table(
        fake_process(3, ["supervisord", "-n"], ppid=1),
        fake_process(8, ["worker"], ppid=1),
        fake_process(9, ["worker"], ppid=3),
    )

    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() == 9


def test_unresolved_parent_pattern_returns_none() -> None:
    locator = pattern_locator("worker", ProcessDetection(pattern=re.compile("^supervisord")))
    table = process_table(fake_process(9, ["worker"], ppid=3))

    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() is None


def test_lower_pid_started_later_wins_next_resolution() -> None:
    locator = pattern_locator("nginx")

    with patch("cmbump.src.locator.psutil.process_iter", process_table(fake_process(200, ["nginx"]))):
        assert locator.resolve() == 200

    table = process_table(fake_process(200, ["nginx"]), fake_process(50, ["nginx", "-g", "daemon off;"]))
    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() == 50


def test_every_resolution_scans_the_process_table() -> None:
    locator = pattern_locator("haproxy")
    table = process_table(fake_process(7, ["haproxy"]))

    with patch("cmbump.src.locator.psutil.process_iter", table):
        assert locator.resolve() == 7
        assert locator.resolve() == 7

    assert table.call_count == 2


def test_exited_process_is_replaced_on_next_resolution() -> None:
    locator = pattern_locator("haproxy")

    with patch("cmbump.src.locator.psutil.process_iter", process_table(fake_process(7, ["haproxy"]))):
        assert locator.resolve() == 7

    with patch("cmbump.src.locator.psutil.process_iter", process_table(fake_process(15, ["haproxy"]))):
        assert locator.resolve() == 15

    with patch("cmbump.src.locator.psutil.process_iter", process_table(fake_process(15, ["sleep", "3600"]))):
        assert locator.resolve() is None


def test_describe_mentions_parent() -> None:
    locator = pattern_locator("worker", ProcessDetection(pid=0))

    assert locator.describe() == "cmdline=~'worker' (parent pid=0)"
    assert ProcessLocator(ProcessDetection(pid=3)).describe() == "pid=3"
