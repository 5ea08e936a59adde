from pathlib import Path
from typing import Any

import numpy as np
import pytest

from imagemath import imagemath_builtins
from imagemath.imagemath_builtins import (
    MAX_PIXEL,
    BuiltinFunction,
    BuiltinRegistry,
    load_catalog,
    range_shifts,
)
from imagemath.imagemath_errors import ArgumentValidationError, EvaluationError
from imagemath.imagemath_values import Image


class FakeContext:
    """Stands in for the evaluator: serves constant images and records calls."""

    def __init__(self, working_dir: Path | None = None) -> None:
        self.working_dir = working_dir or Path.cwd()
        self.shifts: list[float] = []
        self.python_calls: list[dict[str, Any]] = []

    def load_image(self, shift: float) -> Image:
        self.shifts.append(shift)
        return Image(np.full((2, 3), 100.0 + shift, dtype=np.float32), {"shift": shift})

    def run_python(self, **kwargs: Any) -> Any:
        self.python_calls.append(kwargs)
        return 1.0


@pytest.fixture  # type: ignore[misc]
def registry() -> BuiltinRegistry:
    return BuiltinRegistry()


@pytest.fixture  # type: ignore[misc]
def context() -> FakeContext:
    return FakeContext()


def call(registry: BuiltinRegistry, context: FakeContext, name: str, *args: Any, **named: Any) -> Any:
    return registry.invoke(context, name, list(args), named)


def image(values: Any) -> Image:
    return Image(np.asarray(values, dtype=np.float32))


def test_catalog_functions_are_all_implemented(registry: BuiltinRegistry) -> None:
    assert registry.names() == sorted(registry.catalog)
    for name in ("img", "range", "avg", "clahe", "crop", "rgb", "python", "load"):
        assert name in registry
    assert "nope" not in registry
    assert registry.get("nope") is None


def test_catalog_documentation(registry: BuiltinRegistry) -> None:
    function = registry.get("range")
    assert function is not None
    assert function.signature() == "range(from, to, [step])"
    assert function.required == ["from", "to"]
    assert function.get_description("fr")
    assert function.examples
    avg = registry.get("avg")
    assert avg is not None and avg.spread
    assert avg.signature() == "avg(...)"


def test_argument_descriptions_are_not_shared() -> None:
    function = BuiltinFunction.from_dict({"name": "f", "arguments": [{"name": "a"}, {"name": "b"}]})
    first, second = function.arguments
    assert first.description == {} and first.description is not second.description
    first.description["en"] = "changed"
    assert second.description == {}
    assert imagemath_builtins.Argument("x").description is None


def test_catalog_must_be_a_list(tmp_path: Path) -> None:
    path = tmp_path / "catalog.yml"
    path.write_text("name: img\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_catalog(path)


def test_catalog_entries_without_implementation_are_not_callable(tmp_path: Path) -> None:
    path = tmp_path / "catalog.yml"
    path.write_text("- name: img\n  arguments: [{name: ps}]\n- name: teleport\n", encoding="utf-8")
    registry = BuiltinRegistry(load_catalog(path))
    assert registry.names() == ["img"]
    assert "teleport" not in registry


@pytest.mark.parametrize(
    "name,args,named,message",
    [
        ("pow", [1.0, 2.0, 3.0], {}, "Function 'pow' expects 2 argument(s): v, exp"),
        (
            "range",
            [1.0, 2.0, 3.0, 4.0],
            {},
            "Function 'range' expects between 2 and 3 arguments: from, to, [step]",
        ),
        ("pow", [1.0], {}, "Function 'pow' is missing required arguments: exp"),
        ("pow", [1.0], {"foo": 2.0}, "Function 'pow' has unknown arguments: foo"),
        ("avg", [1.0], {"foo": 2.0}, "Function 'avg' has unknown arguments: foo"),
    ],
)  # type: ignore[misc]
def test_binding_errors(
    registry: BuiltinRegistry,
    context: FakeContext,
    name: str,
    args: list[Any],
    named: dict[str, Any],
    message: str,
) -> None:
    with pytest.raises(ArgumentValidationError) as exc:
        registry.invoke(context, name, args, named)
    assert str(exc.value) == message
    assert exc.value.function == name


def test_named_arguments_bind_first() -> None:
    function = BuiltinFunction.from_dict(
        {"name": "f", "arguments": [{"name": "a"}, {"name": "b"}, {"name": "c", "optional": True}]}
    )
    assert function.bind([1.0, 2.0], {"a": 0.0}) == {"a": 0.0, "b": 1.0, "c": 2.0}
    assert function.bind([1.0], {"b": 5.0}) == {"b": 5.0, "a": 1.0}


def test_spread_binding() -> None:
    function = BuiltinFunction("avg", spread=True)
    assert function.bind([1.0, 2.0], {}) == {"list": [1.0, 2.0]}
    assert function.bind([3.0], {"list": [1.0, 2.0]}) == {"list": [1.0, 2.0, 3.0]}


def test_img_and_range_load_through_the_context(registry: BuiltinRegistry, context: FakeContext) -> None:
    assert call(registry, context, "img", 2.0).metadata["shift"] == 2.0
    frames = call(registry, context, "range", -1.0, 1.0)
    assert [f.metadata["shift"] for f in frames] == [-1.0, 0.0, 1.0]
    call(registry, context, "range", 0.0, 1.0, step=0.5)
    assert context.shifts == [2.0, -1.0, 0.0, 1.0, 0.0, 0.5, 1.0]


def test_continuum(registry: BuiltinRegistry, context: FakeContext) -> None:
    result = call(registry, context, "continuum")
    assert result.metadata["continuum"] is True
    assert context.shifts == [0.0]


@pytest.mark.parametrize(
    "start,stop,step,expected",
    [
        (-1.0, 1.0, 1.0, [-1.0, 0.0, 1.0]),
        (0.0, 1.0, 0.25, [0.0, 0.25, 0.5, 0.75, 1.0]),
        (0.0, 1.0, 0.3, [0.0, 0.3, 0.6, 0.8999999999999999]),
        (2.0, 2.0, 1.0, [2.0]),
        (3.0, 1.0, 1.0, []),
    ],
)  # type: ignore[misc]
def test_range_shifts(start: float, stop: float, step: float, expected: list[float]) -> None:
    assert range_shifts(start, stop, step) == pytest.approx(expected)


def test_range_needs_positive_step() -> None:
    with pytest.raises(ArgumentValidationError):
        range_shifts(0.0, 1.0, 0.0)


def test_list_and_concat(registry: BuiltinRegistry, context: FakeContext) -> None:
    assert call(registry, context, "list", 1.0, "a") == [1.0, "a"]
    assert call(registry, context, "concat", [1.0, 2.0], 3.0, [4.0]) == [1.0, 2.0, 3.0, 4.0]


def test_statistics_on_numbers(registry: BuiltinRegistry, context: FakeContext) -> None:
    assert call(registry, context, "avg", 1.0, 2.0, 6.0) == 3.0
    assert call(registry, context, "min", [4.0, 2.0], 3.0) == 2.0
    assert call(registry, context, "max", 4.0, [2.0, 9.0]) == 9.0
    assert call(registry, context, "median", 5.0, 1.0, 3.0) == 3.0


def test_statistics_on_images(registry: BuiltinRegistry, context: FakeContext) -> None:
    frames = call(registry, context, "range", -1.0, 1.0)
    result = call(registry, context, "avg", frames)
    assert isinstance(result, Image)
    assert result.data.shape == (2, 3)
    assert np.allclose(result.data, 100.0)
    assert np.allclose(call(registry, context, "max", frames).data, 101.0)


def test_statistics_reject_mixed_or_empty_input(registry: BuiltinRegistry, context: FakeContext) -> None:
    with pytest.raises(EvaluationError, match="cannot combine image, number"):
        call(registry, context, "avg", 1.0, call(registry, context, "img", 0.0))
    with pytest.raises(EvaluationError, match="at least one value"):
        call(registry, context, "avg")
    with pytest.raises(EvaluationError, match="identical size"):
        call(registry, context, "avg", image([[1.0]]), image([[1.0, 2.0]]))


def test_invert(registry: BuiltinRegistry, context: FakeContext) -> None:
    result = call(registry, context, "invert", image([[0.0, 65535.0]]))
    assert result.data.tolist() == [[MAX_PIXEL, 0.0]]


def test_map_over_list_first_argument(registry: BuiltinRegistry, context: FakeContext) -> None:
    frames = call(registry, context, "range", 0.0, 1.0)
    inverted = call(registry, context, "invert", frames)
    assert isinstance(inverted, list) and len(inverted) == 2
    assert call(registry, context, "width", frames) == [3.0, 3.0]
    assert call(registry, context, "pow", [1.0, 2.0, 3.0], 2.0) == [1.0, 4.0, 9.0]


def test_pow_log_exp_on_numbers(registry: BuiltinRegistry, context: FakeContext) -> None:
    assert call(registry, context, "pow", 2.0, 3.0) == 8.0
    assert call(registry, context, "log", 100.0, base=10.0) == pytest.approx(2.0)
    assert call(registry, context, "log", np.e) == pytest.approx(1.0)
    assert call(registry, context, "exp", 0.0) == 1.0


def test_log_domain_errors(registry: BuiltinRegistry, context: FakeContext) -> None:
    with pytest.raises(EvaluationError, match="logarithm"):
        call(registry, context, "log", 0.0)
    with pytest.raises(ArgumentValidationError):
        call(registry, context, "log", 10.0, base=1.0)


def test_pow_on_image(registry: BuiltinRegistry, context: FakeContext) -> None:
    result = call(registry, context, "pow", image([[2.0, 3.0]]), 2.0)
    assert result.data.tolist() == [[4.0, 9.0]]


def test_image_arguments_are_type_checked(registry: BuiltinRegistry, context: FakeContext) -> None:
    with pytest.raises(ArgumentValidationError, match="expects an image for 'img', got number"):
        call(registry, context, "invert", 3.0)


def test_linear_stretch(registry: BuiltinRegistry, context: FakeContext) -> None:
    result = call(registry, context, "linear_stretch", image([[0.0, 10.0], [20.0, 30.0]]), 0.0, 300.0)
    assert result.data.tolist() == [[0.0, 100.0], [200.0, 300.0]]
    flat = call(registry, context, "linear_stretch", image([[5.0, 5.0]]), lo=7.0)
    assert flat.data.tolist() == [[7.0, 7.0]]


def test_clahe_validates_before_computing(
    registry: BuiltinRegistry, context: FakeContext, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fail(*args: Any) -> None:
        raise AssertionError("equalization must not run")

    monkeypatch.setattr(imagemath_builtins, "equalize", fail)
    with pytest.raises(ArgumentValidationError) as exc:
        call(registry, context, "clahe", image(np.ones((8, 8))), ts=4.0, bins=256.0)
    assert "ts=4, bins=256" in str(exc.value)
    assert exc.value.argument == "bins"


@pytest.mark.parametrize(
    "named",
    [{"ts": 0.0}, {"ts": 2.5}, {"bins": 0.0}, {"clip": 0.0}, {"clip": -1.0}],
)  # type: ignore[misc]
def test_clahe_rejects_invalid_parameters(
    registry: BuiltinRegistry, context: FakeContext, named: dict[str, float]
) -> None:
    with pytest.raises(ArgumentValidationError):
        call(registry, context, "clahe", image(np.ones((4, 4))), **named)


def test_clahe_keeps_shape_and_range(registry: BuiltinRegistry, context: FakeContext) -> None:
    rng = np.random.default_rng(0)
    data = rng.uniform(0, MAX_PIXEL, size=(10, 12))
    result = call(registry, context, "clahe", image(data), ts=4.0, bins=16.0, clip=2.0)
    assert result.data.shape == (10, 12)
    assert float(result.data.min()) >= 0.0
    assert float(result.data.max()) <= MAX_PIXEL

    colour = Image(np.stack([data, data, data]))
    assert call(registry, context, "clahe", colour, ts=4.0, bins=16.0).data.shape == (3, 10, 12)


def test_crop(registry: BuiltinRegistry, context: FakeContext) -> None:
    data = np.arange(16, dtype=np.float32).reshape(4, 4)
    result = call(registry, context, "crop", image(data), 1.0, 0.0, 2.0, 3.0)
    assert result.data.tolist() == [[1.0, 2.0], [5.0, 6.0], [9.0, 10.0]]
    with pytest.raises(EvaluationError, match="outside the 4x4 image"):
        call(registry, context, "crop", image(data), 3.0, 0.0, 2.0, 2.0)


def test_colour_functions(registry: BuiltinRegistry, context: FakeContext) -> None:
    r, g, b = (image(np.full((2, 3), v)) for v in (30.0, 60.0, 90.0))
    colour = call(registry, context, "rgb", r, g, b)
    assert colour.is_color
    assert colour.data.shape == (3, 2, 3)
    assert np.allclose(call(registry, context, "mono", colour).data, 60.0)
    assert call(registry, context, "mono", r) is r

    grey = call(registry, context, "saturate", colour, 0.0)
    assert np.allclose(grey.data, 60.0)
    vivid = call(registry, context, "saturate", colour, 2.0)
    assert vivid.data[:, 0, 0].tolist() == [0.0, 60.0, 120.0]


def test_rgb_needs_matching_mono_images(registry: BuiltinRegistry, context: FakeContext) -> None:
    small, large = image(np.ones((2, 2))), image(np.ones((3, 3)))
    with pytest.raises(EvaluationError, match="identical size"):
        call(registry, context, "rgb", small, small, large)


def test_width_and_height(registry: BuiltinRegistry, context: FakeContext) -> None:
    frame = call(registry, context, "img", 0.0)
    assert call(registry, context, "width", frame) == 3.0
    assert call(registry, context, "height", frame) == 2.0


def test_load_numpy_files(registry: BuiltinRegistry, tmp_path: Path) -> None:
    context = FakeContext(tmp_path)
    np.save(tmp_path / "frame.npy", np.full((2, 2), 7.0))
    (tmp_path / "frames").mkdir()
    for i in range(3):
        np.save(tmp_path / "frames" / f"f{i}.npy", np.full((2, 2), float(i)))

    loaded = call(registry, context, "load", "frame.npy")
    assert loaded.data.tolist() == [[7.0, 7.0], [7.0, 7.0]]
    many = call(registry, context, "load_many", "frames")
    assert [float(m.data[0, 0]) for m in many] == [0.0, 1.0, 2.0]

    with pytest.raises(EvaluationError, match="Unsupported image format"):
        call(registry, context, "load", "frame.png")
    with pytest.raises(EvaluationError, match="not found"):
        call(registry, context, "load", "missing.npy")
    with pytest.raises(EvaluationError, match="Directory not found"):
        call(registry, context, "load_many", "nowhere")


def test_python_functions_delegate_to_the_context(registry: BuiltinRegistry, tmp_path: Path) -> None:
    context = FakeContext(tmp_path)
    assert call(registry, context, "python", "result = 1") == 1.0
    call(registry, context, "python_file", "script.py")
    assert context.python_calls == [{"script": "result = 1"}, {"file": tmp_path / "script.py"}]
