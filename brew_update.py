#!/usr/bin/env python3
"""
===============================================================================
                               BREW UPDATE
===============================================================================
Version: 1.0.0

Routine Homebrew maintenance in one command.

Steps:
• Make sure Homebrew is installed (bootstraps it when missing)
• Refresh the formula index
• Upgrade outdated packages
• Install anything declared in ~/.Brewfile that is missing
• Clean up stale downloads and old versions
"""

import contextlib
import json
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.text import Text

__version__ = "1.0.0"
APP_NAME = "brew-update"

EXIT_OK = 0
EXIT_WRONG_PLATFORM = 1
EXIT_INTERRUPTED = 2

MIN_REFRESH_SECONDS = 0.01

CHECK = "[bold green]✔[/bold green]"
CROSS = "[bold red]✖[/bold red]"
MARKER = "[bold blue]│[/bold blue]"

console = Console()
logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION SYSTEM
# ═══════════════════════════════════════════════════════════════════════════════


class BrewUpdateConfig:
    """JSON-backed settings, merged over built-in defaults."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = config_dir or Path.home() / ".brew_update"
        self.config_file = self.config_dir / "config.json"
        self.log_file = self.config_dir / "brew_update.log"

        self.settings = {
            "homebrew": {
                "executable": "brew",
                "install_script_url": "https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh",
                "brewfile": "~/.Brewfile",
            },
            "phases": {
                "update": True,
                "upgrade": True,
                "bundle": True,
                "cleanup": True,
            },
            "ui": {
                "spinner": "dots",
                "refresh_seconds": 0.05,
            },
            "temp": {
                "directory": None,
                "prefix": "brew_update.",
            },
            "behavior": {
                "report_failures": False,
            },
        }
        self.load()

    @property
    def brewfile(self) -> Path:
        return Path(self.settings["homebrew"]["brewfile"]).expanduser()

    def phase_enabled(self, name: str) -> bool:
        return bool(self.settings["phases"].get(name, True))

    def load(self):
        """Overlay config.json on the defaults; a broken file leaves them untouched."""
        if not self.config_file.exists():
            return
        try:
            loaded = json.loads(self.config_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config {self.config_file}: {e}")
            return
        if isinstance(loaded, dict):
            merge_settings(self.settings, loaded)

    def save(self):
        """Write the effective settings, e.g. to seed a config file on first run."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.config_file.write_text(json.dumps(self.settings, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to save config: {e}")


def merge_settings(base: dict, overrides: dict):
    """Recursively copy ``overrides`` into ``base``, section by section."""
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge_settings(base[key], value)
        else:
            base[key] = value


def setup_logging(cfg: BrewUpdateConfig):
    """Send log records to the config directory; the terminal stays clean."""
    cfg.config_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(cfg.log_file),
            logging.NullHandler(),
        ],
    )


config = BrewUpdateConfig()


# ═══════════════════════════════════════════════════════════════════════════════
# TEMP FILES & BACKGROUND JOBS
# ═══════════════════════════════════════════════════════════════════════════════


class TempSession:
    """Uniquely named capture files sharing one prefix."""

    def __init__(self, prefix: str = "brew_update.", directory: Optional[str] = None):
        self.prefix = prefix
        self.directory = Path(directory or tempfile.gettempdir())

    @contextlib.contextmanager
    def capture(self) -> Iterator[Path]:
        """Yield a fresh capture file; it is deleted however the block exits."""
        fd, name = tempfile.mkstemp(prefix=self.prefix, dir=str(self.directory))
        os.close(fd)
        path = Path(name)
        try:
            yield path
        finally:
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    def sweep(self) -> int:
        """Remove empty leftovers carrying the session prefix."""
        removed = 0
        for path in self.directory.glob(f"{self.prefix}*"):
            try:
                if path.is_file() and path.stat().st_size == 0:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.debug(f"Could not sweep {path}: {e}")
        if removed:
            logger.info(f"Swept {removed} empty temp file(s) from {self.directory}")
        return removed


class BackgroundJob:
    """One external command running in the background."""

    def __init__(self, process: subprocess.Popen, args: List[str]):
        self.process = process
        self.args = args

    @classmethod
    def start(cls, args: List[str], stdout=subprocess.DEVNULL) -> "BackgroundJob":
        logger.info(f"Starting: {' '.join(args)}")
        process = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.DEVNULL,
        )
        return cls(process, args)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_finished(self) -> bool:
        return self.process.poll() is not None

    def wait(self) -> int:
        code = self.process.wait()
        if code != 0:
            logger.warning(f"Command exited {code}: {' '.join(self.args)}")
        return code


def read_capture(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="ignore")
    except OSError as e:
        logger.warning(f"Could not read capture {path}: {e}")
        return ""


# ═══════════════════════════════════════════════════════════════════════════════
# PROGRESS INDICATOR
# ═══════════════════════════════════════════════════════════════════════════════


class ProgressIndicator:
    """Spinner beside a label until the tracked job finishes."""

    def __init__(self, out: Console, spinner: str = "dots", interval: float = 0.05):
        self.console = out
        self.spinner = spinner
        self.interval = max(interval, MIN_REFRESH_SECONDS)

    def wait(self, job: BackgroundJob, label: str, message: Optional[str] = None) -> int:
        """Block until ``job`` is finished, then print ``message`` with a checkmark.

        The spinner line is transient, so without a message nothing is left
        behind. The job's exit status is returned but never displayed.
        """
        with Progress(
            SpinnerColumn(spinner_name=self.spinner),
            TextColumn("[bold cyan]{task.description}"),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
            refresh_per_second=max(1, int(1 / self.interval)),
        ) as progress:
            progress.add_task(label, total=None)
            while not job.is_finished():
                time.sleep(self.interval)

        if message:
            self.console.print(f"{CHECK} {message}")
        return job.wait()


@contextlib.contextmanager
def hidden_cursor(out: Console) -> Iterator[None]:
    """Keep the terminal cursor hidden for the duration of the block.

    Every ``Progress`` display shows the cursor again when it stops, so while
    the guard is held requests to show it are turned into requests to hide it.
    Only the guard itself restores the cursor, on the way out.
    """
    show_cursor = out.show_cursor

    def keep_hidden(show: bool = True) -> bool:
        return show_cursor(False)

    show_cursor(False)
    out.show_cursor = keep_hidden
    try:
        yield
    finally:
        del out.show_cursor
        out.show_cursor(True)


# ═══════════════════════════════════════════════════════════════════════════════
# LOG SUMMARIZERS
# ═══════════════════════════════════════════════════════════════════════════════


def summarize_install_log(text: str) -> List[str]:
    """Package names from the ``Installing <name>`` lines of a bundle install."""
    names = []
    for line in text.splitlines():
        if "installing" not in line.lower():
            continue
        tokens = line.split()
        if len(tokens) >= 2:
            names.append(tokens[1])
    return names


def align_columns(rows: List[str]) -> List[str]:
    """Pad whitespace-separated fields so they line up, like ``column -t``."""
    table = [row.split() for row in rows if row.strip()]
    if not table:
        return []
    widths: Dict[int, int] = {}
    for fields in table:
        for i, value in enumerate(fields):
            widths[i] = max(widths.get(i, 0), len(value))
    lines = []
    for fields in table:
        padded = [value.ljust(widths[i]) for i, value in enumerate(fields)]
        lines.append("  ".join(padded).rstrip())
    return lines


def summarize_upgrade_log(text: str) -> List[str]:
    """Aligned rows from the comma-separated second line of ``brew upgrade``."""
    lines = text.splitlines()
    if len(lines) < 2:
        return []
    return align_columns(lines[1].split(", "))


def print_summary(out: Console, lines: List[str]):
    for line in lines:
        out.print(f"  {MARKER} {line}", highlight=False)


# ═══════════════════════════════════════════════════════════════════════════════
# MAINTENANCE PHASES
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class PhaseResult:
    """What one maintenance phase did."""

    name: str
    changed: bool = False
    skipped: bool = False
    returncodes: List[int] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(code != 0 for code in self.returncodes)


class Maintenance:
    """The four maintenance phases, each driving one command at a time."""

    def __init__(
        self,
        brew: str,
        session: TempSession,
        indicator: ProgressIndicator,
        out: Console,
        brewfile: Path,
    ):
        self.brew = brew
        self.session = session
        self.indicator = indicator
        self.console = out
        self.brewfile = brewfile

    def _run_captured(self, path: Path, args: List[str], label: str, message: Optional[str] = None) -> int:
        with open(path, "w", encoding="utf-8") as out:
            job = BackgroundJob.start([self.brew, *args], stdout=out)
            return self.indicator.wait(job, label, message)

    def update(self) -> PhaseResult:
        """Refresh the formula index."""
        result = PhaseResult("update")
        with self.session.capture() as log:
            result.returncodes.append(
                self._run_captured(log, ["update"], "Update Homebrew formulae")
            )
            # "Already up-to-date." is a single line
            if len(read_capture(log).splitlines()) >= 2:
                result.changed = True
                self.console.print(f"{CHECK} Formulae updated")
        return result

    def upgrade(self) -> PhaseResult:
        """Upgrade outdated packages, if there are any."""
        result = PhaseResult("upgrade")
        with self.session.capture() as outdated:
            result.returncodes.append(
                self._run_captured(outdated, ["outdated"], "Check for available upgrades")
            )
            # any byte of output counts, whitespace included
            if not read_capture(outdated):
                logger.info("No outdated packages")
                return result

            with self.session.capture() as upgrade_log:
                result.returncodes.append(
                    self._run_captured(
                        upgrade_log,
                        ["upgrade", "--display-times"],
                        "Upgrade existing Homebrew packages",
                        "Packages upgraded",
                    )
                )
                result.changed = True
                print_summary(self.console, summarize_upgrade_log(read_capture(upgrade_log)))
        return result

    def bundle(self) -> PhaseResult:
        """Install whatever the global Brewfile declares but is missing."""
        result = PhaseResult("bundle")
        if not self.brewfile.is_file():
            logger.warning(f"No Brewfile at {self.brewfile}, skipping bundle")
            self.console.print(f"{CROSS} [red]No Brewfile found at {self.brewfile}[/red]")
            result.skipped = True
            return result

        with self.session.capture() as check_log:
            # without --verbose, check reports missing dependencies regardless
            result.returncodes.append(
                self._run_captured(
                    check_log,
                    ["bundle", "check", "--global", "--verbose"],
                    "Check Brewfile for missing packages",
                )
            )
            if "missing" not in read_capture(check_log):
                logger.info("Brewfile dependencies satisfied")
                return result

            with self.session.capture() as install_log:
                result.returncodes.append(
                    self._run_captured(
                        install_log,
                        ["bundle", "install", "--global"],
                        "Install missing packages",
                        "New packages installed",
                    )
                )
                result.changed = True
                print_summary(self.console, summarize_install_log(read_capture(install_log)))
        return result

    def cleanup(self) -> PhaseResult:
        """Purge old versions and cached downloads; output is discarded."""
        result = PhaseResult("cleanup")
        job = BackgroundJob.start([self.brew, "cleanup"])
        result.returncodes.append(self.indicator.wait(job, "Clean up"))
        return result


# ═══════════════════════════════════════════════════════════════════════════════
# UI
# ═══════════════════════════════════════════════════════════════════════════════


def display_banner(out: Console):
    banner_text = Text()
    banner_text.append("🍺 ", style="bold yellow")
    banner_text.append(APP_NAME, style="bold white")
    banner_text.append(f" v{__version__}", style="bold blue")
    out.print(banner_text)


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN APPLICATION
# ═══════════════════════════════════════════════════════════════════════════════


class BrewUpdateApp:
    """Main application controller."""

    PHASES = ("update", "upgrade", "bundle", "cleanup")

    def __init__(self, cfg: BrewUpdateConfig, out: Console):
        self.config = cfg
        self.console = out
        self.session = TempSession(
            cfg.settings["temp"]["prefix"], cfg.settings["temp"]["directory"]
        )
        self.indicator = ProgressIndicator(
            out, cfg.settings["ui"]["spinner"], cfg.settings["ui"]["refresh_seconds"]
        )

    def check_platform(self) -> bool:
        system = platform.system()
        if system != "Darwin":
            logger.error(f"Unsupported platform: {system}")
            self.console.print(f"{CROSS} [red]{APP_NAME} only runs on macOS (found {system})[/red]")
            return False
        return True

    def ensure_homebrew(self) -> str:
        """Resolve the brew executable, running the official installer if needed."""
        executable = self.config.settings["homebrew"]["executable"]
        found = shutil.which(executable)
        if found:
            return found

        url = self.config.settings["homebrew"]["install_script_url"]
        logger.info(f"Homebrew not found, bootstrapping from {url}")
        self.console.print("[yellow]Homebrew not found, installing it...[/yellow]")
        try:
            req = urllib.request.Request(url, headers={"User-Agent": f"{APP_NAME}/{__version__}"})
            with urllib.request.urlopen(req, timeout=30) as response:
                script = response.read().decode()
        except (urllib.error.URLError, OSError) as e:
            logger.error(f"Failed to fetch Homebrew installer: {e}")
            self.console.print(f"{CROSS} [red]Could not download the Homebrew installer: {e}[/red]")
        else:
            code = subprocess.run(["/bin/bash", "-c", script], check=False).returncode
            logger.info(f"Homebrew installer exited {code}")

        return shutil.which(executable) or executable

    def maintain(self, brew: str) -> List[PhaseResult]:
        """Run the enabled phases strictly in order."""
        maintenance = Maintenance(
            brew, self.session, self.indicator, self.console, self.config.brewfile
        )
        results = []
        for name in self.PHASES:
            if not self.config.phase_enabled(name):
                logger.info(f"Phase {name} disabled in config")
                continue
            result = getattr(maintenance, name)()
            logger.info(
                f"Phase {name}: changed={result.changed} skipped={result.skipped} "
                f"returncodes={result.returncodes}"
            )
            if result.failed and self.config.settings["behavior"]["report_failures"]:
                self.console.print(f"[yellow]⚠️  brew {name} reported an error, see {self.config.log_file}[/yellow]")
            results.append(result)
        return results

    def run(self) -> int:
        """Main application entry point."""
        if not self.check_platform():
            return EXIT_WRONG_PLATFORM

        brew = self.ensure_homebrew()

        with hidden_cursor(self.console):
            self.maintain(brew)
            self.console.print(f"{CHECK} [bold]All done![/bold] 🍺")

        self.session.sweep()
        return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point."""
    argv = sys.argv[1:] if argv is None else list(argv)

    # any argument at all, "--" included, only shows the version
    if argv:
        display_banner(console)
        return EXIT_OK

    setup_logging(config)
    if not config.config_file.exists():
        config.save()
    app = BrewUpdateApp(config, console)
    try:
        return app.run()
    except KeyboardInterrupt:
        console.show_cursor(True)
        console.print(f"\n{CROSS} [red]Interrupted[/red]")
        logger.warning("Interrupted by user")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
