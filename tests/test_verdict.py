import time

import pytest

from sandbox_executor.errors import VerdictEvaluationError
from sandbox_executor.verdict import compile_predicate, evaluate_verdict

TAX_SOURCE = """
class Invoice {
  constructor(amount) { this.amount = amount; this.taxRate = 0.2; }
  total() { return this.amount * (1 + this.taxRate); }
}
"""


def test_includes_predicate_passes() -> None:
    assert evaluate_verdict(TAX_SOURCE, "return code.includes('taxRate')") is True


def test_serialized_arrow_body_from_editor() -> None:
    check = "return (code.includes('this.taxRate') && (code.includes('*') || code.includes('+')));"
    assert evaluate_verdict(TAX_SOURCE, check) is True
    assert evaluate_verdict("const rate = 1", check) is False


def test_missing_predicate_fails() -> None:
    assert evaluate_verdict(TAX_SOURCE, None) is False
    assert evaluate_verdict(TAX_SOURCE, "   ") is False


@pytest.mark.parametrize(
    "check",
    [
        "return code.includes(",
        "return require('fs').readFileSync('/etc/passwd')",
        "process.exit(1)",
        "return code.includes(taxRate)",
        "return code.length > 3",
        "return /(unclosed/.test(code)",
    ],
)
def test_invalid_predicates_fail_closed(check: str) -> None:
    assert evaluate_verdict(TAX_SOURCE, check) is False


def test_invalid_predicate_raises_at_compile_time() -> None:
    with pytest.raises(VerdictEvaluationError):
        compile_predicate("code.includes('a') &&")


def test_negation_and_literals() -> None:
    assert compile_predicate("!code.includes('eval')")("const x = 1") is True
    assert compile_predicate("true && !false")("") is True


def test_string_methods_and_transforms() -> None:
    predicate = compile_predicate(
        "code.trim().startsWith('const') && code.toLowerCase().includes('taxrate') && code.trim().endsWith(';')"
    )
    assert predicate("  const TaxRate = 1;\n") is True
    assert predicate("let TaxRate = 1;") is False


def test_regex_forms() -> None:
    assert compile_predicate("/tax(rate)?/i.test(code)")("const TAXRATE = 1") is True
    assert compile_predicate("code.match(/Math\\.pow|\\*\\*/)")("x ** 2") is True
    assert compile_predicate("code.match('.map')")("arr.map(f)") is True
    assert compile_predicate("code.match('.map')")("arr_map(f)") is False


def test_escaped_quotes_in_string_literals() -> None:
    predicate = compile_predicate('code.includes("say \\"hi\\"") || code.includes(\'it\\\'s\')')
    assert predicate('say "hi"') is True
    assert predicate("it's") is True


def test_oversized_predicate_is_rejected() -> None:
    assert evaluate_verdict(TAX_SOURCE, "code.includes('a') || " * 500 + "true") is False


def test_search_is_not_a_boolean_check() -> None:
    assert evaluate_verdict("arr.map(f)", "code.search('map')") is False


def test_catastrophic_backtracking_fails_within_budget() -> None:
    started = time.monotonic()
    assert evaluate_verdict("a" * 40 + "!", "/(a+)+$/.test(code)") is False
    assert evaluate_verdict("a" * 40 + "!", "code.match(/(a|aa)+$/)") is False
    assert time.monotonic() - started < 5
