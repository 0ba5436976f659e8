"""Tests for option building and validation."""

import os
import tempfile
from pathlib import Path

import pytest

from torrentcast.cli import build_parser
from torrentcast.config import Options, PlayerTarget, prepare_options
from torrentcast.errors import InputError
from torrentcast.hooks import run_detached, validate_hook


def options_for(*argv: str, environ=None) -> Options:
    return Options.from_args(build_parser().parse_args(list(argv)), environ=environ or {})


def make_script(path: Path, executable: bool = True) -> Path:
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755 if executable else 0o644)
    return path


class TestFromArgs:
    """Tests for Options.from_args()."""

    def test_bare_identifier_means_download(self) -> None:
        options = options_for("magnet:?xt=urn:btih:abc")
        assert options.command == "download"
        assert options.inputs == ["magnet:?xt=urn:btih:abc"]

    def test_add_is_download(self) -> None:
        assert options_for("add", "x.torrent").command == "download"

    def test_no_arguments_means_help(self) -> None:
        assert options_for().command == "help"

    def test_version_flag(self) -> None:
        assert options_for("-v").command == "version"

    def test_player_flags(self) -> None:
        assert options_for("x.torrent", "--vlc").player is PlayerTarget.VLC
        omx = options_for("x.torrent", "--omx")
        assert omx.player is PlayerTarget.OMX
        assert omx.omx_jack == "hdmi"
        assert options_for("x.torrent", "--omx", "local").omx_jack == "local"
        assert options_for("x.torrent", "--xbmc").player is PlayerTarget.XBMC
        assert options_for("x.torrent", "--airplay").player is PlayerTarget.AIRPLAY

    def test_players_are_mutually_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["x.torrent", "--vlc", "--mpv"])

    def test_select(self) -> None:
        """Test that a bare --select lists files and an index selects one."""
        listed = options_for("x.torrent", "--select")
        assert listed.list_files is True
        assert listed.select is None
        chosen = options_for("x.torrent", "--select", "2")
        assert chosen.list_files is False
        assert chosen.select == 2

    def test_negative_select_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["x.torrent", "--select", "-3"])

    def test_debug_from_environment(self) -> None:
        assert options_for("x.torrent", environ={"DEBUG": "torrentcast"}).debug is True

    def test_repeatable_announce(self) -> None:
        options = options_for("x.torrent", "-a", "http://a/announce", "-a", "http://b/announce")
        assert options.announce == ["http://a/announce", "http://b/announce"]

    def test_no_quit(self) -> None:
        assert options_for("x.torrent").quit is True
        assert options_for("x.torrent", "--no-quit").quit is False


class TestPrepareOptions:
    """Tests for prepare_options()."""

    @pytest.mark.parametrize("flag", ["--vlc", "--chromecast", "--airplay", "--xbmc", "--stdout"])
    def test_batch_rejects_players(self, flag: str) -> None:
        options = options_for("a.torrent", "b.torrent", "c.torrent", flag)
        with pytest.raises(InputError, match=f"The {flag} argument cannot be used with multiple files/folders."):
            prepare_options(options)

    def test_batch_rejects_select_and_subtitles(self, tmp_path: Path) -> None:
        with pytest.raises(InputError, match="--select"):
            prepare_options(options_for("a.torrent", "b.torrent", "--select"))
        subtitles = tmp_path / "subs.srt"
        subtitles.write_text("1")
        with pytest.raises(InputError, match="--subtitles"):
            prepare_options(options_for("a.torrent", "b.torrent", "-t", str(subtitles)))

    def test_batch_forces_quiet(self) -> None:
        assert prepare_options(options_for("a.torrent", "b.torrent")).quiet is True

    def test_batch_seed(self) -> None:
        with pytest.raises(InputError):
            prepare_options(options_for("seed", "a", "b", "--mpv"))

    def test_stdout_and_debug_force_quiet(self) -> None:
        assert prepare_options(options_for("a.torrent", "--stdout")).quiet is True
        assert prepare_options(options_for("a.torrent", environ={"DEBUG": "1"})).quiet is True
        assert prepare_options(options_for("a.torrent")).quiet is False

    def test_missing_subtitles(self, tmp_path: Path) -> None:
        with pytest.raises(InputError, match="does not exist"):
            prepare_options(options_for("a.torrent", "-t", str(tmp_path / "nope.srt")))

    def test_out_defaults(self) -> None:
        """Test that downloads land in the cwd, or a temp folder when streaming to a player."""
        assert prepare_options(options_for("a.torrent")).out == Path.cwd()
        streamed = prepare_options(options_for("a.torrent", "--mpv"))
        assert streamed.out == Path(tempfile.gettempdir()) / "torrentcast"
        assert prepare_options(options_for("a.torrent", "-o", "/data")).out == Path("/data")

    def test_hooks_are_resolved(self, tmp_path: Path) -> None:
        script = make_script(tmp_path / "done.sh")
        options = prepare_options(options_for("a.torrent", "--on-done", str(script), "--on-exit", str(script)))
        assert options.on_done == os.path.realpath(script)
        assert options.on_exit == os.path.realpath(script)

    def test_bad_hook(self, tmp_path: Path) -> None:
        with pytest.raises(InputError, match="does not exist"):
            prepare_options(options_for("a.torrent", "--on-done", str(tmp_path / "missing.sh")))


class TestHooks:
    """Tests for validate_hook() and run_detached()."""

    def test_not_executable(self, tmp_path: Path) -> None:
        script = make_script(tmp_path / "plain.sh", executable=False)
        with pytest.raises(InputError, match="is not executable"):
            validate_hook(str(script))

    def test_directory_is_not_executable_script(self, tmp_path: Path) -> None:
        with pytest.raises(InputError, match="is not executable"):
            validate_hook(str(tmp_path))

    def test_run_detached(self, tmp_path: Path) -> None:
        script = make_script(tmp_path / "hook.sh")
        assert run_detached(str(script)) is True

    def test_run_detached_failure_is_logged(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        assert run_detached(str(tmp_path / "vanished.sh")) is False
        assert "could not be started" in caplog.text
