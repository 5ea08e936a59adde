from typing import Any

import numpy as np
import pytest

from imagemath.imagemath_ast import ASTNode, SectionKind
from imagemath.imagemath_config import EngineConfig
from imagemath.imagemath_errors import EvaluationError, UnresolvedNameError
from imagemath.imagemath_eval import (
    BatchRunner,
    Environment,
    MappingImageProvider,
    ScriptExecutor,
    ScriptResult,
    expand_outputs,
)
from imagemath.imagemath_parser import parse_source
from imagemath.imagemath_values import Image


def run(source: str, config: EngineConfig | None = None, **kwargs: Any) -> ScriptResult:
    script, _ = parse_source(source)
    with ScriptExecutor(script, config) as executor:
        return executor.execute(**kwargs)


def test_arithmetic_precedence() -> None:
    assert run("[outputs]\nx = 1 + 2 * 3").outputs == {"x": 7.0}


def test_variables_from_earlier_sections() -> None:
    result = run("[setup]\na = 2\n[outputs]\nb = a * a\nc = b - a")
    assert result.outputs == {"b": 4.0, "c": 2.0}
    assert result.variables["a"] == 2.0


def test_invalid_expressions_are_collected_and_evaluation_continues() -> None:
    result = run("[outputs]\na = 1\nb = foo(1, 2)\nc = a + 1")
    assert result.outputs == {"a": 1.0, "c": 2.0}
    assert not result.succeeded
    [invalid] = result.invalid_expressions
    assert invalid.error == "Unresolved function 'foo'"
    assert (invalid.label, invalid.line) == ("b", 3)
    assert invalid.source == "foo(1, 2)"
    assert "line 3: b = foo(1, 2)" in str(invalid)


def test_statements_using_a_failed_variable_fail_too() -> None:
    result = run("[outputs]\na = missing\nb = a + 1")
    assert [i.error for i in result.invalid_expressions] == [
        "Unresolved variable 'missing'",
        "Unresolved variable 'a'",
    ]


def test_fail_fast_raises_the_first_error() -> None:
    with pytest.raises(UnresolvedNameError):
        run("[outputs]\na = foo()\nb = 1", EngineConfig(fail_fast=True))


def test_parse_errors_are_reported_as_invalid_expressions() -> None:
    result = run("[outputs]\na = 1\n)\nb = 2")
    assert result.outputs == {"a": 1.0, "b": 2.0}
    [invalid] = result.invalid_expressions
    assert invalid.error.startswith("Syntax error: Expected an expression")
    assert invalid.line == 3


def test_stray_closing_token_is_one_invalid_expression() -> None:
    result = run("[outputs]\na = )\nb = 1")
    assert result.outputs == {"b": 1.0}
    [invalid] = result.invalid_expressions
    assert invalid.label == "a"


def test_anonymous_outputs_get_generated_names(images: dict[float, Image]) -> None:
    script, _ = parse_source("[outputs]\nimg(0)\nnamed = 1\n2 + 2")
    executor = ScriptExecutor(script)
    first = executor.execute(images=images)
    assert sorted(first.outputs) == ["imagemath_0_0", "imagemath_0_1", "named"]
    assert first.outputs["imagemath_0_1"] == 4.0
    second = executor.execute(images=images)
    assert "imagemath_1_0" in second.outputs


def test_image_lists_are_expanded(images: dict[float, Image]) -> None:
    result = run("[outputs]\nframes = range(-1, 1)\nnumbers = list(1, 2)", images=images)
    assert sorted(result.outputs) == ["frames_0", "frames_1", "frames_2", "numbers"]
    assert result.outputs["frames_2"].metadata["shift"] == 1.0
    assert len(result.values["frames"]) == 3
    assert list(result.image_outputs()) == ["frames_0", "frames_1", "frames_2"]


def test_internal_variables_are_not_reported() -> None:
    result = run("[outputs]\n__tmp = 2\nshown = __tmp * 2")
    assert result.outputs == {"shown": 4.0}


def test_expand_outputs_skips_missing_values() -> None:
    image = Image(np.zeros((1, 1)))
    assert expand_outputs({"a": None, "b": [1.0, image], "c": "x"}) == {"b_1": image, "c": "x"}


@pytest.mark.parametrize(
    "source,expected",
    [
        ("[setup]\na = 1\n[outputs]\nb = a + 1", {"b": 2.0}),
        ("a = 1\n[later]\nb = 2", {"a": 1.0}),
        ("[first]\na = 1\n[second]\nb = 2", {}),
    ],
)  # type: ignore[misc]
def test_output_section_selection(source: str, expected: dict[str, float]) -> None:
    assert run(source).outputs == expected


PARAMS = "s { type: number, default: 2 }\n[outputs]\ny = s * 10"


def test_parameter_defaults_and_overrides() -> None:
    assert run(PARAMS).outputs == {"y": 20.0}
    assert run(PARAMS, params={"s": 3.0}).outputs == {"y": 30.0}
    assert run(PARAMS, params={"s": 3.0}, inputs={"s": 4.0}).outputs == {"y": 40.0}


def test_images_and_shifts(images: dict[float, Image]) -> None:
    result = run("[outputs]\na = img(-1)\nb = avg(range(0, 1))", images=images)
    assert np.allclose(result.outputs["a"].data, 90.0)
    assert np.allclose(result.outputs["b"].data, 105.0)
    assert result.shifts == {-1.0, 0.0, 1.0}


def test_missing_image_is_an_invalid_expression(images: dict[float, Image]) -> None:
    result = run("[outputs]\na = img(5)", images=images)
    assert result.invalid_expressions[0].error == "No image available for pixel shift 5"


def test_duplicate_named_arguments() -> None:
    result = run("[outputs]\na = pow(v: 1, v: 2)")
    assert "duplicate argument 'v'" in result.invalid_expressions[0].error


def test_builtin_argument_errors_are_reported() -> None:
    result = run("[outputs]\na = pow(1, 2, 3)")
    assert result.invalid_expressions[0].error == "Function 'pow' expects 2 argument(s): v, exp"


# User functions


def test_user_function_result() -> None:
    result = run("[fun:double x]\nresult = x * 2\n[outputs]\ny = double(21)")
    assert result.outputs == {"y": 42.0}


def test_user_function_without_result_returns_last_value() -> None:
    result = run("[fun:f x]\na = x * 2\nx * 10\n[outputs]\ny = f(2)")
    assert result.outputs == {"y": 20.0}


def test_user_function_maps_over_list_argument() -> None:
    result = run("[fun:inc x]\nresult = x + 1\n[outputs]\ny = inc(list(1, 2))")
    assert result.outputs == {"y": [2.0, 3.0]}


def test_user_function_named_arguments() -> None:
    result = run("[fun:sub a b]\nresult = a - b\n[outputs]\ny = sub(b: 1, 10)")
    assert result.outputs == {"y": 9.0}


def test_user_function_arity_is_strict_by_default() -> None:
    source = "[fun:f a b]\nresult = a\n[outputs]\ny = f(1)"
    assert run(source).invalid_expressions[0].error == "Function 'f' expects 2 argument(s): a, b"
    assert run(source, EngineConfig(strict_function_arity=False)).outputs == {"y": 1.0}


def test_user_function_unknown_named_argument() -> None:
    result = run("[fun:f a]\nresult = a\n[outputs]\ny = f(z: 1)")
    assert result.invalid_expressions[0].error == "Function 'f' has unknown arguments: z"


def test_recursion_is_bounded() -> None:
    result = run(
        "[fun:loop x]\nresult = loop(x)\n[outputs]\ny = loop(1)", EngineConfig(max_call_depth=5)
    )
    assert result.invalid_expressions[0].error == "Maximum call depth of 5 exceeded in function 'loop'"


def test_function_scope() -> None:
    result = run("g = 10\n[fun:f x]\ntmp = x + g\nresult = tmp\n[outputs]\ny = f(1)")
    assert result.outputs == {"y": 11.0}
    assert "tmp" not in result.variables


def test_functions_can_call_functions() -> None:
    result = run(
        "[fun:double x]\nresult = x * 2\n[fun:quad x]\nresult = double(double(x))\n[outputs]\ny = quad(3)"
    )
    assert result.outputs == {"y": 12.0}


def test_builtins_take_precedence_over_user_functions() -> None:
    result = run("[fun:max a b]\nresult = 0\n[outputs]\ny = max(1, 5)")
    assert result.outputs == {"y": 5.0}


# Embedded Python


def test_python_sees_script_variables() -> None:
    result = run('[outputs]\nx = 4\ny = python("result = x * 2")')
    assert result.outputs["y"] == 8.0


def test_python_can_be_disabled() -> None:
    result = run('[outputs]\ny = python("result = 1")', EngineConfig(python_enabled=False))
    assert result.invalid_expressions[0].error == "Python execution is disabled"


def test_python_errors_are_invalid_expressions() -> None:
    result = run('[outputs]\ny = python("result = 1 / 0")')
    error = result.invalid_expressions[0].error
    assert error.startswith("Python error: ZeroDivisionError")


# Batch mode

BATCH = "[outputs]\nframe = img(0)\n[[batch]]\nstack = avg(frame)\ncount = width(frame)"


def test_batch_runner_merges_item_outputs() -> None:
    script, _ = parse_source(BATCH)
    runner = BatchRunner(ScriptExecutor(script))
    for value in (10.0, 20.0):
        runner.run_item({0.0: Image(np.full((2, 4), value))})
    assert [len(v) for v in runner.merged().values()] == [2]

    result = runner.finish()
    assert result.succeeded
    assert len(list(runner)) == 2
    assert np.allclose(result.batch.outputs["stack"].data, 15.0)
    assert result.batch.outputs["count"] == [4.0, 4.0]


def test_batch_sections_run_only_in_batch_mode() -> None:
    script, _ = parse_source(BATCH)
    executor = ScriptExecutor(script)
    single = executor.execute(SectionKind.SINGLE, images={0.0: Image(np.ones((1, 1)))})
    assert list(single.outputs) == ["frame"]
    assert "stack" not in single.variables


# Scopes and providers


def test_environment_scopes() -> None:
    outer = Environment()
    outer.assign("a", 1.0)
    inner = Environment(outer)
    inner.assign("b", 2.0)
    inner.assign("a", 3.0)
    assert inner.lookup("a") == 3.0
    assert outer.lookup("a") == 1.0
    assert "b" in inner and "b" not in outer
    assert inner.flatten() == {"a": 3.0, "b": 2.0}
    with pytest.raises(UnresolvedNameError, match="Unresolved variable 'c'"):
        inner.lookup("c")


def test_mapping_provider_normalizes_keys() -> None:
    image = Image(np.zeros((1, 1)))
    provider = MappingImageProvider({1: image})
    assert provider.get(1.0) is image
    with pytest.raises(EvaluationError):
        provider.get(2.0)


def test_unknown_node_kind() -> None:
    script, _ = parse_source("[outputs]\na = 1")
    executor = ScriptExecutor(script)
    evaluator = executor.create_evaluator(Environment(), None)
    with pytest.raises(EvaluationError, match="Cannot evaluate"):
        evaluator.evaluate(ASTNode("meta_block", line=1, col=1), Environment())
