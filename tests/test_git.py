from __future__ import annotations

import subprocess

from matrixci.git_facts import git


def _fake_git(outputs):
    calls = []

    def check_output(argv, **kwargs):
        calls.append(argv)
        value = outputs[argv[1]]
        if isinstance(value, BaseException):
            raise value
        return value

    return check_output, calls


def test_commit_message(monkeypatch):
    fake, calls = _fake_git({"log": "feat: thing [skip tests]\n\nbody\n"})
    monkeypatch.setattr(git.subprocess, "check_output", fake)
    assert git.commit_message_or_none() == "feat: thing [skip tests]\n\nbody"
    assert calls == [["git", "log", "-1", "--pretty=%B", "HEAD"]]


def test_detached_head_has_no_branch(monkeypatch):
    fake, _ = _fake_git({"rev-parse": "HEAD\n"})
    monkeypatch.setattr(git.subprocess, "check_output", fake)
    assert git.current_branch_or_none() is None


def test_branch(monkeypatch):
    fake, _ = _fake_git({"rev-parse": "feature/x\n"})
    monkeypatch.setattr(git.subprocess, "check_output", fake)
    assert git.current_branch_or_none() == "feature/x"


def test_no_repository(monkeypatch):
    fake, _ = _fake_git(
        {
            "log": subprocess.CalledProcessError(128, ["git", "log"]),
            "rev-parse": FileNotFoundError("git"),
        }
    )
    monkeypatch.setattr(git.subprocess, "check_output", fake)
    assert git.commit_message_or_none() is None
    assert git.current_branch_or_none() is None
