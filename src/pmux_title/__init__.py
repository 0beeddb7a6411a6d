"""Keep pmux pane titles in sync with the shell prompt."""

import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_CLIENT = "pmux"
CONFIG_DIR = Path.home() / ".config" / "pmux-title"
DEFAULT_CONFIG = CONFIG_DIR / "config.env"
HOOK_DIR = CONFIG_DIR

SHELLS = ("bash", "zsh", "powershell")
HOOK_EXTENSIONS = {"bash": "bash", "zsh": "zsh", "powershell": "ps1"}
HOOK_MARKER = "pmux-title"

# `history 1` prints "  42  cmd"; bash marks edited entries as "  42* cmd"
_HISTORY_INDEX_RE = re.compile(r"^\s*\d+\*?(?:\s+|$)")
_SEPARATORS = "/\\" if os.sep == "\\" else "/"


# --- Title computation ---


def working_directory_leaf(cwd: Optional[str] = None) -> Optional[str]:
    """Return the final path segment of the working directory.

    Args:
        cwd: Directory to use; defaults to the process working directory

    Returns:
        The last segment, "/" for the root, or None when the directory
        cannot be read
    """
    if cwd is None:
        try:
            cwd = os.getcwd()
        except OSError:
            return None

    if not cwd:
        return None

    trimmed = cwd.rstrip(_SEPARATORS)
    if not trimmed:
        return cwd[0]

    # Windows drive root ("C:\" trims down to "C:")
    if os.sep == "\\" and len(trimmed) == 2 and trimmed[1] == ":" and len(cwd) > 2:
        return trimmed + cwd[2]

    leaf = re.split(f"[{re.escape(_SEPARATORS)}]", trimmed)[-1]
    return _single_line(leaf) or None


def _single_line(text: str) -> str:
    return " ".join(part.strip() for part in text.splitlines() if part.strip())


def normalize_command(text: Optional[str]) -> Optional[str]:
    """Collapse a command line onto one line; None if nothing is left."""
    if text is None:
        return None
    command = _single_line(text)
    return command or None


def parse_history_line(raw: Optional[str]) -> Optional[str]:
    """Strip the history number from a `history 1` line.

    >>> parse_history_line("  503  git status")
    'git status'
    """
    if raw is None:
        return None
    return normalize_command(_HISTORY_INDEX_RE.sub("", raw, count=1))


def format_title(leaf: Optional[str], command: Optional[str]) -> str:
    """Format a pane title.

    - No command: "project"
    - With command: "project: git status"
    """
    leaf = leaf or ""
    if not command:
        return leaf
    if not leaf:
        return command
    return f"{leaf}: {command}"


def compute_title(
    cwd: Optional[str] = None,
    history: Optional[str] = None,
    last_command: Optional[str] = None,
) -> str:
    """Build the title for the current prompt.

    Args:
        cwd: Working directory reported by the shell
        history: Raw `history 1` output, history number included
        last_command: Bare last command; takes precedence over history

    Returns:
        Single-line title string
    """
    leaf = working_directory_leaf(cwd)
    if last_command is not None:
        command = normalize_command(last_command)
    else:
        command = parse_history_line(history)
    return format_title(leaf, command)


# --- Configuration ---


@dataclass
class TitleConfig:
    client: str = DEFAULT_CLIENT
    target: Optional[str] = None
    timeout: Optional[float] = None
    log_path: Optional[Path] = None
    config_path: Optional[Path] = None


def _read_kv_config(path: Path) -> dict[str, str]:
    data: dict[str, str] = {}
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return data
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip().lower()
        value = value.strip().strip('"').strip("'")
        if key:
            data[key] = value
    return data


def _expand_path(raw: str) -> Optional[Path]:
    """Expand ~ in a configured path; None when the home directory is unknown."""
    try:
        return Path(raw).expanduser()
    except RuntimeError:
        return None


def get_config_path() -> Path:
    """Get path to the config.env file."""
    env_path = os.environ.get("PMUX_TITLE_CONFIG")
    if not env_path:
        return DEFAULT_CONFIG
    return _expand_path(env_path) or DEFAULT_CONFIG


def load_config(path: Optional[Path] = None) -> TitleConfig:
    """Load settings from config.env, with PMUX_TITLE_* variables taking precedence."""
    if path is None:
        path = get_config_path()
    data = _read_kv_config(path)

    def pick(env_key: str, config_key: str) -> Optional[str]:
        value = os.environ.get(env_key) or data.get(config_key)
        return value.strip() if value and value.strip() else None

    timeout: Optional[float] = None
    timeout_raw = pick("PMUX_TITLE_TIMEOUT", "timeout")
    if timeout_raw is not None:
        try:
            timeout = float(timeout_raw)
        except ValueError:
            timeout = None
    if timeout is not None and timeout <= 0:
        timeout = None

    log_raw = pick("PMUX_TITLE_LOG", "log")

    return TitleConfig(
        client=pick("PMUX_TITLE_CLIENT", "client") or DEFAULT_CLIENT,
        target=pick("PMUX_TITLE_TARGET", "target"),
        timeout=timeout,
        log_path=_expand_path(log_raw) if log_raw else None,
        config_path=path,
    )


def configure_logging(config: TitleConfig) -> None:
    """Send debug output to the configured log file, never to the terminal."""
    if config.log_path is None:
        return
    target = str(config.log_path.absolute())
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return
    try:
        config.log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(target, encoding="utf-8")
    except OSError:
        return
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)


# --- Talking to pmux ---


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of one set-pane-title call."""

    ok: bool
    error: Optional[str] = None


def client_command(title: str, config: TitleConfig) -> list[str]:
    """Build argv for `pmux set-pane-title`. The title is always one argument."""
    argv = [config.client, "set-pane-title"]
    if config.target:
        argv += ["-t", config.target]
    argv.append(title)
    return argv


def update_pane_title(title: str, config: Optional[TitleConfig] = None) -> UpdateResult:
    """Ask pmux to relabel the active pane.

    Launch failures, non-zero exits and timeouts are returned as a failed
    UpdateResult instead of being raised.
    """
    if config is None:
        config = load_config()
    argv = client_command(title, config)

    try:
        completed = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=config.timeout,
            check=False,
        )
    except FileNotFoundError:
        return UpdateResult(False, f"{config.client}: not found")
    except subprocess.TimeoutExpired:
        return UpdateResult(False, f"{config.client}: timed out after {config.timeout}s")
    except OSError as e:
        return UpdateResult(False, f"{config.client}: {e}")
    except ValueError as e:
        # argv with an embedded NUL byte
        return UpdateResult(False, f"invalid client command: {e}")

    if completed.returncode != 0:
        return UpdateResult(
            False, f"{config.client} exited with status {completed.returncode}"
        )
    return UpdateResult(True)


def on_prompt_render(
    cwd: Optional[str] = None,
    history: Optional[str] = None,
    last_command: Optional[str] = None,
    config: Optional[TitleConfig] = None,
) -> None:
    """Hook body: compute the title and send it, ignoring any failure."""
    if config is None:
        config = load_config()
    title = compute_title(cwd=cwd, history=history, last_command=last_command)
    result = update_pane_title(title, config)
    if result.ok:
        logger.debug("title set: %r", title)
    else:
        logger.debug("title not set (%s): %r", result.error, title)


# --- Shell adapters ---


def hook_program() -> list[str]:
    """Command the shell adapters run on each prompt."""
    found = shutil.which("pmux-title")
    if found:
        return [found]
    return [sys.executable, "-m", "pmux_title"]


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


BASH_HOOK = """\
# pmux-title: bash prompt hook
__pmux_title_update() {{
  local last_status=$?
  local raw
  raw=$(HISTTIMEFORMAT= builtin history 1 2>/dev/null)
  {program} update --cwd "$PWD" --history "$raw" >/dev/null 2>&1
  return $last_status
}}

if [ -z "${{__pmux_title_hooked-}}" ]; then
  __pmux_title_hooked=1
  if [[ "$(declare -p PROMPT_COMMAND 2>/dev/null)" == "declare -a"* ]]; then
    PROMPT_COMMAND=(__pmux_title_update "${{PROMPT_COMMAND[@]}}")
  else
    PROMPT_COMMAND="__pmux_title_update${{PROMPT_COMMAND:+; $PROMPT_COMMAND}}"
  fi
fi
"""

ZSH_HOOK = """\
# pmux-title: zsh prompt hook
__pmux_title_update() {{
  local last_status=$?
  local cmd
  cmd=$(fc -ln -1 2>/dev/null)
  {program} update --cwd "$PWD" --last-command "$cmd" >/dev/null 2>&1
  return $last_status
}}

if [[ -z "${{__pmux_title_hooked-}}" ]]; then
  __pmux_title_hooked=1
  typeset -ga precmd_functions
  precmd_functions=(__pmux_title_update $precmd_functions)
fi
"""

POWERSHELL_HOOK = """\
# pmux-title: PowerShell prompt hook
function global:__PmuxTitleUpdate {{
    $cwd = $PWD.ProviderPath
    $last = Get-History -Count 1 -ErrorAction SilentlyContinue
    $argv = @('update', '--cwd', $cwd)
    if ($last -and $last.CommandLine) {{
        $argv += @('--last-command', $last.CommandLine)
    }}
    try {{
        & {program} @argv *> $null
    }} catch {{
    }}
}}

if (-not $global:__PmuxTitleHooked) {{
    $global:__PmuxTitleHooked = $true
    $global:__PmuxTitleOriginalPrompt = $function:prompt
    function global:prompt {{
        $lastExit = $global:LASTEXITCODE
        __PmuxTitleUpdate
        $global:LASTEXITCODE = $lastExit
        & $global:__PmuxTitleOriginalPrompt
    }}
}}
"""


def render_hook(shell: str, program: Optional[list[str]] = None) -> str:
    """Render the prompt hook for a shell.

    Sourcing the result any number of times registers the hook once per
    shell process.
    """
    if program is None:
        program = hook_program()

    if shell == "bash":
        return BASH_HOOK.format(program=" ".join(shlex.quote(p) for p in program))
    if shell == "zsh":
        return ZSH_HOOK.format(program=" ".join(shlex.quote(p) for p in program))
    if shell == "powershell":
        return POWERSHELL_HOOK.format(program=" ".join(_ps_quote(p) for p in program))
    raise ValueError(f"Unsupported shell: {shell}")


def default_rc_file(shell: str) -> Path:
    """Startup file the installer appends to."""
    home = Path.home()
    if shell == "bash":
        return home / ".bashrc"
    if shell == "zsh":
        return Path(os.environ.get("ZDOTDIR") or home) / ".zshrc"
    if sys.platform == "win32":
        return home / "Documents" / "PowerShell" / "Microsoft.PowerShell_profile.ps1"
    return home / ".config" / "powershell" / "Microsoft.PowerShell_profile.ps1"


def source_line(shell: str, hook_path: Path) -> str:
    """Line that loads the hook file from a startup file, if the file exists."""
    if shell == "powershell":
        quoted = _ps_quote(str(hook_path))
        return f"if (Test-Path {quoted}) {{ . {quoted} }}"
    quoted = shlex.quote(str(hook_path))
    return f"[ -f {quoted} ] && source {quoted}"


def hook_installed(rc_file: Path, hook_path: Path) -> bool:
    """Check whether a startup file already sources the hook."""
    try:
        data = rc_file.read_bytes()
    except OSError:
        return False
    return os.fsencode(str(hook_path)) in data


def install_hook(
    shell: str,
    rc_file: Optional[Path] = None,
    hook_dir: Optional[Path] = None,
) -> tuple[Path, bool]:
    """Write the hook file and source it from the shell's startup file.

    Returns:
        (hook_path, added) where added is False when the startup file
        already sourced the hook
    """
    if rc_file is None:
        rc_file = default_rc_file(shell)
    if hook_dir is None:
        hook_dir = HOOK_DIR

    hook_dir.mkdir(parents=True, exist_ok=True)
    hook_path = hook_dir / f"hook.{HOOK_EXTENSIONS[shell]}"
    hook_path.write_text(render_hook(shell), encoding="utf-8")

    if hook_installed(rc_file, hook_path):
        return hook_path, False

    rc_file.parent.mkdir(parents=True, exist_ok=True)
    existing = rc_file.read_bytes() if rc_file.exists() else b""
    block = f"# pmux pane titles ({HOOK_MARKER})\n{source_line(shell, hook_path)}\n"
    if existing and not existing.endswith(b"\n"):
        block = "\n" + block
    with open(rc_file, "a", encoding="utf-8") as f:
        f.write(block)
    return hook_path, True


# --- CLI ---


@click.group()
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx: click.Context):
    """Keep pmux pane titles in sync with your shell prompt."""
    ctx.obj = load_config()
    configure_logging(ctx.obj)


def _title_options(f):
    f = click.option(
        "--last-command",
        default=None,
        help="Last command line, without a history number",
    )(f)
    f = click.option(
        "--history",
        "history_line",
        default=None,
        help="Raw output of the shell's `history 1`",
    )(f)
    f = click.option(
        "--cwd", default=None, help="Working directory (defaults to the current one)"
    )(f)
    return f


@cli.command()
@_title_options
@click.pass_obj
def update(
    config: TitleConfig,
    cwd: Optional[str],
    history_line: Optional[str],
    last_command: Optional[str],
):
    """Send the prompt title to the active pmux pane.

    Called by the shell hook before each prompt. Prints nothing and exits 0,
    even when no pmux session is running.
    """
    on_prompt_render(
        cwd=cwd, history=history_line, last_command=last_command, config=config
    )


@cli.command()
@_title_options
def preview(cwd: Optional[str], history_line: Optional[str], last_command: Optional[str]):
    """Print the title that `update` would send."""
    click.echo(compute_title(cwd=cwd, history=history_line, last_command=last_command))


@cli.command()
@click.argument("shell", type=click.Choice(SHELLS))
def init(shell: str):
    """Print the prompt hook for SHELL.

    Examples:

        eval "$(pmux-title init bash)"

        pmux-title init powershell | Out-String | Invoke-Expression
    """
    click.echo(render_hook(shell), nl=False)


@cli.command()
@click.argument("shell", type=click.Choice(SHELLS))
@click.option(
    "--rc-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Startup file to update (defaults to the shell's usual one)",
)
def install(shell: str, rc_file: Optional[Path]):
    """Install the prompt hook for SHELL."""
    if rc_file is None:
        rc_file = default_rc_file(shell)
    try:
        hook_path, added = install_hook(shell, rc_file)
    except OSError as e:
        raise click.ClickException(f"Could not install {shell} hook: {e}") from e

    click.echo(f"✓ Wrote hook: {hook_path}")
    if added:
        click.echo(f"✓ Added hook to: {rc_file}")
    else:
        click.echo(f"✓ Hook already configured in: {rc_file}")
    click.echo("")
    click.echo("Open a new shell; each prompt will update the active pmux pane title.")


@cli.command()
@click.pass_obj
def status(config: TitleConfig):
    """Show the effective configuration."""
    # Deferred: `update` runs on every prompt and never renders
    from rich.console import Console
    from rich.table import Table

    console = Console()

    resolved = shutil.which(config.client)
    config_path = config.config_path or get_config_path()

    table = Table(title="pmux-title", show_header=False)
    table.add_column("setting", style="bold")
    table.add_column("value")

    table.add_row("client", resolved or f"[red]{config.client} (not found)[/red]")
    table.add_row("target", config.target or "[dim](active session)[/dim]")
    table.add_row(
        "timeout",
        f"{config.timeout}s" if config.timeout is not None else "[dim]none[/dim]",
    )
    table.add_row(
        "config",
        str(config_path) if config_path.exists() else f"[dim]{config_path} (missing)[/dim]",
    )
    table.add_row("log", str(config.log_path) if config.log_path else "[dim]off[/dim]")
    table.add_row("hook program", " ".join(hook_program()))

    for shell in SHELLS:
        rc_file = default_rc_file(shell)
        hook_path = HOOK_DIR / f"hook.{HOOK_EXTENSIONS[shell]}"
        if hook_installed(rc_file, hook_path):
            table.add_row(shell, f"[green]installed[/green] in {rc_file}")
        else:
            table.add_row(shell, "[dim]not installed[/dim]")

    console.print(table)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
