"""Tests for running executables inside a Proton or Wine prefix."""

import logging
import pathlib

import pytest

import heroic
import steam
from games import ChildProcessFailedError, GameRef, NotFoundError, Runner

from conftest import FF7_APPID, WINE_SCRIPT, write_executable


@pytest.fixture
def steam_setup(steam_root, standard_protons):
    library = steam.SteamLibrary.from_dir(steam_root)
    game = steam.get_game(FF7_APPID, library)
    runner = next(r for r in steam.find_all_runners(library) if r.id == "proton_8")
    return game, runner


def wine_messages(caplog, level):
    return [
        record.getMessage() for record in caplog.records
        if record.levelno == level and record.getMessage().startswith("[wine] ")
    ]


class TestSteamRunInPrefix:

    def test_runs_through_runtime(self, steam_setup, steam_root, tmp_path, caplog):
        caplog.set_level(logging.INFO)
        game, runner = steam_setup
        exe = tmp_path / "installer.exe"

        assert steam.run_in_prefix(exe, game, runner, ["/VERYSILENT", "/LOG=7thHeaven.log"]) == 0

        out = wine_messages(caplog, logging.INFO)
        assert f"[wine] args: -- {runner.binary_path} waitforexitandrun {exe} /VERYSILENT /LOG=7thHeaven.log" in out
        assert f"[wine] client: {steam_root}" in out
        assert f"[wine] compat data: {tmp_path / 'library2/steamapps/compatdata/39140'}" in out
        assert "[wine] overrides: dinput.dll=n,b" in out
        assert wine_messages(caplog, logging.WARNING) == ["[wine] warning from wine"]

    def test_failure_raises(self, steam_setup, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_EXIT", "3")
        game, runner = steam_setup
        with pytest.raises(ChildProcessFailedError) as excinfo:
            steam.run_in_prefix(tmp_path / "installer.exe", game, runner)
        assert excinfo.value.returncode == 3
        assert "installer.exe" in str(excinfo.value)

    def test_output_drained_before_failure(self, steam_setup, tmp_path, monkeypatch, caplog):
        caplog.set_level(logging.INFO)
        monkeypatch.setenv("FAKE_EXIT", "1")
        game, runner = steam_setup
        with pytest.raises(ChildProcessFailedError):
            steam.run_in_prefix(tmp_path / "installer.exe", game, runner)
        assert wine_messages(caplog, logging.WARNING) == ["[wine] warning from wine"]

    def test_no_runner(self, steam_setup, tmp_path):
        game, _runner = steam_setup
        with pytest.raises(NotFoundError):
            steam.run_in_prefix(tmp_path / "installer.exe", game, None)

    def test_no_runtime(self, steam_setup, tmp_path, caplog):
        caplog.set_level(logging.INFO)
        game, runner = steam_setup
        bare = Runner(id=runner.id, display_name=runner.display_name, binary_path=runner.binary_path)
        with pytest.raises(NotFoundError):
            steam.run_in_prefix(tmp_path / "installer.exe", game, bare)
        assert wine_messages(caplog, logging.INFO) == []


class TestHeroicRunInPrefix:

    @pytest.fixture
    def wine(self, tmp_path):
        return write_executable(tmp_path / "wine-ge" / "bin" / "wine", WINE_SCRIPT)

    @pytest.fixture
    def game(self, tmp_path):
        return GameRef(
            store="heroic", app_id=1698970154, name="FINAL FANTASY VII",
            install_path=tmp_path / "ff7", prefix_path=tmp_path / "prefixes" / "ff7",
        )

    def test_runs_wine_in_prefix(self, wine, game, tmp_path):
        runner = Runner(id="wine", display_name="Wine-GE", binary_path=wine)
        exe = tmp_path / "installer.exe"

        assert heroic.run_in_prefix(exe, game, runner, ["/VERYSILENT"]) == 0

        called = (wine.parent / "called.txt").read_text().splitlines()
        assert called == [str(game.prefix_path), "dinput.dll=n,b", str(exe), "/VERYSILENT"]

    def test_returns_exit_status(self, wine, game, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_EXIT", "5")
        runner = Runner(id="wine", display_name="Wine-GE", binary_path=wine)
        assert heroic.run_in_prefix(tmp_path / "installer.exe", game, runner) == 5

    def test_no_runner(self, game, tmp_path):
        with pytest.raises(NotFoundError):
            heroic.run_in_prefix(tmp_path / "installer.exe", game, None)
