"""
Shared test fixtures: a fake ``brew`` behind ``subprocess.Popen`` and a
recording console.
"""

import io
import subprocess
from pathlib import Path
from typing import Dict, List, Tuple

import pytest
from rich.console import Console

import brew_update


class RecordingConsole(Console):
    """Console writing to memory that remembers cursor visibility changes."""

    def __init__(self):
        super().__init__(file=io.StringIO(), width=200, force_terminal=False, color_system=None)
        self.cursor_calls: List[bool] = []

    def show_cursor(self, show: bool = True) -> bool:
        self.cursor_calls.append(show)
        return super().show_cursor(show)

    @property
    def output(self) -> str:
        return self.file.getvalue()

    @property
    def lines(self) -> List[str]:
        return [line for line in self.output.splitlines() if line.strip()]


class FakeBrew:
    """Records brew invocations and writes canned stdout for each subcommand."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.outputs: Dict[Tuple[str, ...], str] = {}
        self.returncodes: Dict[Tuple[str, ...], int] = {}
        self.interrupt_on: Tuple[str, ...] = ()

    def subcommands(self) -> List[Tuple[str, ...]]:
        return [tuple(args[1:]) for args in self.calls]

    def count(self, *subcommand: str) -> int:
        return self.subcommands().count(tuple(subcommand))

    def popen(self, args, stdin=None, stdout=None, stderr=None, **kwargs):
        return FakeProcess(self, list(args), stdout)


class FakeProcess:
    def __init__(self, brew: FakeBrew, args: List[str], stdout):
        brew.calls.append(args)
        self.key = tuple(args[1:])
        self.brew = brew
        self.returncode = None
        text = brew.outputs.get(self.key, "")
        if text and hasattr(stdout, "write"):
            stdout.write(text)
            stdout.flush()

    def poll(self):
        if self.key == self.brew.interrupt_on:
            raise KeyboardInterrupt
        self.returncode = self.brew.returncodes.get(self.key, 0)
        return self.returncode

    def wait(self, timeout=None):
        return self.poll()


@pytest.fixture
def fake_brew(monkeypatch) -> FakeBrew:
    brew = FakeBrew()
    monkeypatch.setattr(subprocess, "Popen", brew.popen)
    return brew


@pytest.fixture
def out() -> RecordingConsole:
    return RecordingConsole()


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "tmp"
    directory.mkdir()
    return directory


@pytest.fixture
def cfg(tmp_path: Path, temp_dir: Path) -> brew_update.BrewUpdateConfig:
    """Config isolated from the real home directory."""
    cfg = brew_update.BrewUpdateConfig(tmp_path / "config")
    cfg.settings["homebrew"]["brewfile"] = str(tmp_path / ".Brewfile")
    cfg.settings["temp"]["directory"] = str(temp_dir)
    cfg.settings["ui"]["refresh_seconds"] = 0.01
    return cfg


@pytest.fixture
def maintenance(cfg, out) -> brew_update.Maintenance:
    session = brew_update.TempSession(cfg.settings["temp"]["prefix"], cfg.settings["temp"]["directory"])
    indicator = brew_update.ProgressIndicator(out, interval=0.01)
    return brew_update.Maintenance("brew", session, indicator, out, cfg.brewfile)


@pytest.fixture
def on_macos(monkeypatch):
    monkeypatch.setattr(brew_update.platform, "system", lambda: "Darwin")
    monkeypatch.setattr(brew_update.shutil, "which", lambda name: "/opt/homebrew/bin/brew")
