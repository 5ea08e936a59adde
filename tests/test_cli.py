import argparse
import json
import logging
from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest

from imagemath import imagemath_cli
from imagemath.imagemath_cli import main, parse_define, parse_image, setup_logging

WriteFile = Callable[[str, str], Path]

DOPPLER = """\
meta {
    title { en = "Doppler" fr = "Effet Doppler" }
    author = "Jane"
    requires = "5.0"
    params {
        doppler_shift { type = "number" default = 7 min = 0 max = 20 name = "Shift" }
        mode { type = "choice" choices = "fast,slow" }
    }
    outputs {
        sum { title = "Sum of wings" }
    }
}
[outputs]
red = img(-doppler_shift)
blue = img(doppler_shift)
sum = red + blue + continuum() * 0
n = width(red)
"""


@pytest.fixture  # type: ignore[misc]
def script(write: WriteFile) -> Path:
    return write("doppler.math", DOPPLER)


@pytest.fixture  # type: ignore[misc]
def frames(tmp_path: Path) -> dict[int, Path]:
    paths = {}
    for shift in (-3, 0, 3):
        path = tmp_path / f"frame{shift}.npy"
        np.save(path, np.full((2, 4), 100.0 + shift))
        paths[shift] = path
    return paths


def test_parse_prints_the_script(script: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["parse", str(script)]) == 0
    out = capsys.readouterr().out
    assert "[outputs]" in out
    assert "red = img(-doppler_shift)" in out


def test_parse_json(script: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["parse", str(script), "--json"]) == 0
    tree = json.loads(capsys.readouterr().out)
    assert tree["kind"] == "script"
    assert [c["kind"] for c in tree["children"]] == ["meta_block", "section", "eof"]


def test_parse_errors_exit_with_1(write: WriteFile, capsys: pytest.CaptureFixture[str]) -> None:
    path = write("broken.math", "[outputs]\na = (1 +\nb = 2")
    assert main(["parse", str(path)]) == 1
    assert "broken.math:" in capsys.readouterr().err


def test_lex_errors_are_reported(write: WriteFile, capsys: pytest.CaptureFixture[str]) -> None:
    path = write("lex.math", 'a = "unterminated')
    assert main(["parse", str(path)]) == 1
    assert capsys.readouterr().err.startswith("error: Unterminated string")


def test_missing_script(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["parse", str(tmp_path / "nope.math")]) == 1
    assert "error:" in capsys.readouterr().err


def test_params(script: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["params", str(script)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "Doppler"
    assert "author: Jane" in lines
    assert "requires: 5.0" in lines
    assert "  doppler_shift (number) = 7  Shift [0..20]" in lines
    assert '  mode (choice) = "fast"  mode {fast, slow}' in lines
    assert "  output sum: Sum of wings" in lines


def test_params_in_another_language(script: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["params", str(script), "--lang", "fr"]) == 0
    assert capsys.readouterr().out.splitlines()[0] == "Effet Doppler"


def test_shifts(script: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["shifts", str(script)]) == 0
    assert capsys.readouterr().out.split() == ["-7", "0", "7"]
    assert main(["shifts", str(script), "-D", "doppler_shift=2.5"]) == 0
    assert capsys.readouterr().out.split() == ["-2.5", "0", "2.5"]


def test_run_saves_image_outputs(
    script: Path, frames: dict[int, Path], tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    out_dir = tmp_path / "out"
    argv = [
        "run",
        str(script),
        "-D",
        "doppler_shift=3",
        f"--image=-3={frames[-3]}",
        f"--image=0={frames[0]}",
        f"--image=3={frames[3]}",
        "--out",
        str(out_dir),
    ]
    assert main(argv) == 0
    out = capsys.readouterr().out
    assert f"sum -> {out_dir / 'sum.npy'}" in out
    assert "n = 4.00" in out
    assert np.allclose(np.load(out_dir / "sum.npy"), 200.0)
    assert sorted(p.name for p in out_dir.iterdir()) == ["blue.npy", "red.npy", "sum.npy"]


def test_run_prints_images_without_out_dir(
    script: Path, frames: dict[int, Path], capsys: pytest.CaptureFixture[str]
) -> None:
    argv = ["run", str(script), "-D", "doppler_shift=3"]
    argv += [f"--image={shift}={path}" for shift, path in frames.items()]
    assert main(argv) == 0
    assert "red = Image(mono 4x2)" in capsys.readouterr().out


def test_run_with_invalid_expressions_exits_with_1(
    script: Path, frames: dict[int, Path], capsys: pytest.CaptureFixture[str]
) -> None:
    # doppler_shift defaults to 7, for which no image is given
    assert main(["run", str(script), f"--image=0={frames[0]}"]) == 1
    err = capsys.readouterr().err
    assert "doppler.math: line" in err
    assert "No image available for pixel shift -7" in err


def test_includes_resolve_next_to_the_script(write: WriteFile, capsys: pytest.CaptureFixture[str]) -> None:
    write("lib/common.math", "[fun:double x]\nresult = x * 2")
    path = write("main.math", '[include "lib/common"]\n[outputs]\ny = double(4)')
    assert main(["run", str(path)]) == 0
    assert "y = 8.00" in capsys.readouterr().out


def test_include_dir_flag(tmp_path: Path, write: WriteFile, capsys: pytest.CaptureFixture[str]) -> None:
    write("shared/common.math", "[fun:double x]\nresult = x * 2")
    path = write("scripts/main.math", '[include "common"]\n[outputs]\ny = double(4)')
    assert main(["--include-dir", str(tmp_path / "shared"), "run", str(path)]) == 0
    assert "y = 8.00" in capsys.readouterr().out


def test_config_file(write: WriteFile, capsys: pytest.CaptureFixture[str]) -> None:
    config = write("imagemath.yml", "python_enabled: false\n")
    path = write("py.math", '[outputs]\ny = python("result = 1")')
    assert main(["--config", str(config), "run", str(path)]) == 1
    assert "Python execution is disabled" in capsys.readouterr().err


def test_invalid_config_file(write: WriteFile, capsys: pytest.CaptureFixture[str]) -> None:
    config = write("imagemath.yml", "colour: blue\n")
    path = write("a.math", "[outputs]\na = 1")
    assert main(["--config", str(config), "run", str(path)]) == 1
    assert "error: Unknown configuration keys: colour" in capsys.readouterr().err


@pytest.mark.parametrize(
    "text,expected",
    [("a=1", ("a", 1.0)), ("mode=fast", ("mode", "fast")), (" s = -2.5", ("s", -2.5)), ("t=", ("t", ""))],
)  # type: ignore[misc]
def test_parse_define(text: str, expected: tuple[str, object]) -> None:
    assert parse_define(text) == expected


@pytest.mark.parametrize("text", ["novalue", "=3"])  # type: ignore[misc]
def test_parse_define_rejects_malformed_input(text: str) -> None:
    with pytest.raises(argparse.ArgumentTypeError):
        parse_define(text)


def test_parse_image() -> None:
    assert parse_image("-3=blue.npy") == (-3.0, "blue.npy")
    for text in ("blue.npy", "x=blue.npy", "3="):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_image(text)


def test_setup_logging_honours_the_debug_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    logger = logging.getLogger("imagemath")
    logger.handlers.clear()
    monkeypatch.setenv(imagemath_cli.DEBUG_ENV, "1")
    setup_logging(verbose=False)
    assert logger.level == logging.DEBUG
    setup_logging(verbose=False)
    assert len(logger.handlers) == 1
    assert logger.handlers[0].formatter is not None
    assert logger.handlers[0].formatter._fmt == "[%(levelname)s] %(message)s"


def test_setup_logging_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(imagemath_cli.DEBUG_ENV, raising=False)
    setup_logging(verbose=False, level="ERROR")
    assert logging.getLogger("imagemath").level == logging.ERROR
    setup_logging(verbose=True)
    assert logging.getLogger("imagemath").level == logging.DEBUG
