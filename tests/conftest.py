"""
Shared fixtures for ff7-linux tests.

Builds a throwaway Steam installation (two libraries, a runtime, config.vdf)
and a Heroic config folder under tmp_path.
"""

import pathlib
import stat
import textwrap
from typing import Callable, Optional

import pytest

RUNTIME_APPID = 1628350
FF7_APPID = 39140

CONFIG_VDF = textwrap.dedent('''\
    "InstallConfigStore"
    {
    \t"Software"
    \t{
    \t\t"Valve"
    \t\t{
    \t\t\t"Steam"
    \t\t\t{
    \t\t\t\t"CompatToolMapping"
    \t\t\t\t{
    \t\t\t\t\t"0"
    \t\t\t\t\t{
    \t\t\t\t\t\t"name"\t\t"proton_experimental"
    \t\t\t\t\t\t"config"\t\t""
    \t\t\t\t\t\t"priority"\t\t"75"
    \t\t\t\t\t}
    \t\t\t\t}
    \t\t\t}
    \t\t}
    \t}
    }
''')

# Stand-in for the runtime's entry point: reports what it was given.
RUN_SCRIPT = textwrap.dedent('''\
    #!/bin/sh
    echo "args: $*"
    echo "client: $STEAM_COMPAT_CLIENT_INSTALL_PATH"
    echo "compat data: $STEAM_COMPAT_DATA_PATH"
    echo "overrides: $WINEDLLOVERRIDES"
    echo "warning from wine" >&2
    exit ${FAKE_EXIT:-0}
''')

WINE_SCRIPT = textwrap.dedent('''\
    #!/bin/sh
    echo "this goes nowhere"
    printf '%s\\n' "$WINEPREFIX" "$WINEDLLOVERRIDES" "$@" > "$(dirname "$0")/called.txt"
    exit ${FAKE_EXIT:-0}
''')


def write_executable(path: pathlib.Path, content: str) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


def write_appmanifest(library: pathlib.Path, app_id: int, name: str, install_dir: str) -> pathlib.Path:
    manifest = library / "steamapps" / f"appmanifest_{app_id}.acf"
    manifest.parent.mkdir(parents=True, exist_ok=True)
    manifest.write_text(textwrap.dedent(f'''\
        "AppState"
        {{
        \t"appid"\t\t"{app_id}"
        \t"name"\t\t"{name}"
        \t"installdir"\t\t"{install_dir}"
        }}
    '''))
    (library / "steamapps" / "common" / install_dir).mkdir(parents=True, exist_ok=True)
    return manifest


@pytest.fixture
def steam_root(tmp_path: pathlib.Path) -> pathlib.Path:
    """A Steam client root with a second library holding FF7 and no Proton yet."""
    root = tmp_path / "Steam"
    second = tmp_path / "library2"
    (root / "steamapps").mkdir(parents=True)
    (second / "steamapps").mkdir(parents=True)
    (root / "steamapps" / "libraryfolders.vdf").write_text(textwrap.dedent(f'''\
        "libraryfolders"
        {{
        \t"0"
        \t{{
        \t\t"path"\t\t"{root}"
        \t}}
        \t"1"
        \t{{
        \t\t"path"\t\t"{second}"
        \t}}
        }}
    '''))
    (root / "config").mkdir()
    (root / "config" / "config.vdf").write_text(CONFIG_VDF)
    write_appmanifest(root, RUNTIME_APPID, "Steam Linux Runtime 3.0 (sniper)", "SteamLinuxRuntime_sniper")
    write_executable(root / "steamapps" / "common" / "SteamLinuxRuntime_sniper" / "run", RUN_SCRIPT)
    write_appmanifest(second, FF7_APPID, "FINAL FANTASY VII", "FINAL FANTASY VII")
    return root


@pytest.fixture
def add_proton(steam_root: pathlib.Path) -> Callable[..., pathlib.Path]:
    """Install a Proton build into the Steam root; returns its proton script."""
    app_ids = iter(range(1000000, 2000000))

    def _add(name: str, install_dir: Optional[str] = None, manifest: Optional[str] = None) -> pathlib.Path:
        install_dir = install_dir or name
        write_appmanifest(steam_root, next(app_ids), name, install_dir)
        tool = steam_root / "steamapps" / "common" / install_dir
        if manifest is None:
            manifest = f'"manifest"\n{{\n\t"require_tool_appid"\t\t"{RUNTIME_APPID}"\n}}\n'
        if manifest:
            (tool / "toolmanifest.vdf").write_text(manifest)
        return write_executable(tool / "proton", "#!/bin/sh\nexit 0\n")

    return _add


@pytest.fixture
def standard_protons(add_proton) -> None:
    add_proton("Proton 7.0")
    add_proton("Proton 8.0")
    add_proton("Proton Experimental")


@pytest.fixture
def heroic_config(tmp_path: pathlib.Path) -> pathlib.Path:
    config = tmp_path / "heroic"
    (config / "GamesConfig").mkdir(parents=True)
    return config
