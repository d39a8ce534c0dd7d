"""Unit tests for fans.py."""
# pyright: basic

from __future__ import annotations

import os
import pathlib
import tempfile
from unittest.mock import patch

import pytest

import fans


class TestIsFanInput:
    """Tests for the fan*_input name predicate."""

    @pytest.mark.parametrize(
        "name", ["fan1_input", "fan12_input", "fan_input", "fanfoo_input"]
    )
    def test_matches(self, name: str) -> None:
        assert fans.is_fan_input(name)

    @pytest.mark.parametrize(
        "name",
        [
            "fan1_min",
            "fan1_label",
            "temp1_input",
            "Fan1_input",
            "fan1_INPUT",
            "pwm1",
            "xfan1_input",
            "fan1_input.bak",
        ],
    )
    def test_rejects(self, name: str) -> None:
        assert not fans.is_fan_input(name)


class TestDiscover:
    """Tests for sysfs discovery."""

    def test_finds_nested_fans(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            hwmon = root / "devices" / "platform" / "nct6775.656" / "hwmon" / "hwmon3"
            hwmon.mkdir(parents=True)
            (hwmon / "fan1_input").write_text("1200\n")
            (hwmon / "fan2_input").write_text("0\n")
            (hwmon / "fan1_min").write_text("0\n")
            (hwmon / "temp1_input").write_text("45000\n")

            found = fans.discover(root)

            assert found == frozenset({hwmon / "fan1_input", hwmon / "fan2_input"})

    def test_empty_tree(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            assert fans.discover(tmpdir) == frozenset()

    def test_missing_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            assert fans.discover(pathlib.Path(tmpdir) / "nope") == frozenset()

    def test_directory_named_like_fan_is_included(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            (root / "fan9_input").mkdir()

            assert fans.discover(root) == frozenset({root / "fan9_input"})

    def test_symlinks_listed_not_followed(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            real = root / "devices" / "hwmon0"
            real.mkdir(parents=True)
            (real / "fan1_input").write_text("900\n")
            cls = root / "class" / "hwmon"
            cls.mkdir(parents=True)
            (cls / "hwmon0").symlink_to(real)
            (cls / "fan3_input").symlink_to(root / "gone")  # broken link

            found = fans.discover(root)

            assert found == frozenset({real / "fan1_input", cls / "fan3_input"})

    def test_walk_errors_are_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            good = root / "hwmon0"
            good.mkdir()
            (good / "fan1_input").write_text("900\n")

            def walk(top: str, onerror=None, **_kwargs):  # noqa: ANN001, ANN202
                assert onerror is not None
                onerror(PermissionError(13, "Permission denied", str(root / "x")))
                yield str(good), [], ["fan1_input"]

            with patch.object(os, "walk", side_effect=walk):
                found = fans.discover(root)

            assert found == frozenset({good / "fan1_input"})


class TestIsReadable:
    """Tests for single-sensor reads."""

    def test_readable(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = pathlib.Path(tmpdir) / "fan1_input"
            path.write_text("1200\n")
            assert fans.is_readable(path)

    def test_content_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = pathlib.Path(tmpdir) / "fan1_input"
            path.write_text("")
            assert fans.is_readable(path)

    def test_missing(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            assert not fans.is_readable(pathlib.Path(tmpdir) / "fan1_input")

    def test_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            assert not fans.is_readable(pathlib.Path(tmpdir))

    def test_io_error(self) -> None:
        with patch.object(
            pathlib.Path, "read_text", side_effect=OSError(6, "No such device")
        ):
            assert not fans.is_readable(pathlib.Path("/sys/fan1_input"))

    def test_undecodable(self) -> None:
        with patch.object(
            pathlib.Path,
            "read_text",
            side_effect=UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid"),
        ):
            assert not fans.is_readable(pathlib.Path("/sys/fan1_input"))


class TestIsHealthy:
    """Tests for the aggregate health check."""

    def test_empty_is_healthy(self) -> None:
        assert fans.is_healthy(frozenset())

    def test_all_readable(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            paths = [root / "fan1_input", root / "fan2_input"]
            for p in paths:
                p.write_text("1000\n")
            assert fans.is_healthy(frozenset(paths))

    def test_one_unreadable(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            (root / "fan1_input").write_text("1000\n")
            sensors = frozenset({root / "fan1_input", root / "fan2_input"})
            assert not fans.is_healthy(sensors)

    def test_vanished_after_discovery(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            (root / "fan1_input").write_text("1000\n")
            sensors = fans.discover(root)
            assert fans.is_healthy(sensors)

            (root / "fan1_input").unlink()
            assert not fans.is_healthy(sensors)

    def test_reads_every_sensor(self) -> None:
        sensors = frozenset(pathlib.Path(f"/sys/fan{i}_input") for i in range(3))
        with patch.object(fans, "is_readable", return_value=False) as mock:
            assert not fans.is_healthy(sensors)
        assert mock.call_count == 3
