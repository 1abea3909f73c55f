"""Calculator capability: arithmetic, statistics, unit conversion and simple finance."""

from __future__ import annotations

import ast
import math
import operator
import statistics
from typing import Any, Dict, List

from ..exceptions import CapabilityExecutionError
from . import Capability, CapabilitySchema

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS = {
    "sqrt": math.sqrt,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
}

_CONSTANTS = {"pi": math.pi, "e": math.e}

_STATS = {
    "mean": statistics.fmean,
    "average": statistics.fmean,
    "median": statistics.median,
    "min": min,
    "max": max,
    "sum": math.fsum,
    "count": len,
    "variance": statistics.pvariance,
    "stdev": statistics.stdev,
}

# (from, to) -> factor
_UNIT_FACTORS = {
    ("km", "m"): 1000.0,
    ("m", "km"): 0.001,
    ("kg", "g"): 1000.0,
    ("g", "kg"): 0.001,
    ("lb", "kg"): 0.453592,
    ("kg", "lb"): 2.20462,
}

MAX_EXPONENT = 1000
MAX_RESULT_DIGITS = 10000


def check_power(base: Any, exponent: Any) -> None:
    """Reject powers whose exponent or result size is out of bounds.

    Raises:
        CapabilityExecutionError: If ``base ** exponent`` would exceed
            ``MAX_EXPONENT`` or ``MAX_RESULT_DIGITS`` decimal digits
    """
    if abs(exponent) > MAX_EXPONENT:
        raise CapabilityExecutionError("Exponent too large")
    if exponent > 0 and abs(base) > 1:
        digits = exponent * math.log10(abs(base))
        if digits > MAX_RESULT_DIGITS:
            raise CapabilityExecutionError(
                f"Result too large: about {int(digits)} digits (limit {MAX_RESULT_DIGITS})"
            )


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression without ``eval``.

    ``^`` is accepted as exponentiation.
    """
    try:
        tree = ast.parse(expression.replace("^", "**"), mode="eval")
    except SyntaxError as e:
        raise CapabilityExecutionError(f"Invalid expression: {expression!r}") from e
    try:
        return _eval_node(tree.body)
    except OverflowError as e:
        raise CapabilityExecutionError(f"Result out of range: {expression!r}") from e


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
            and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            check_power(left, right)
        if isinstance(node.op, (ast.Div, ast.FloorDiv, ast.Mod)) and right == 0:
            raise CapabilityExecutionError("Division by zero")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) \
            and node.func.id in _FUNCTIONS and not node.keywords:
        args = [_eval_node(arg) for arg in node.args]
        if node.func.id == "sqrt" and args and args[0] < 0:
            raise CapabilityExecutionError("Cannot take the square root of a negative number")
        return _FUNCTIONS[node.func.id](*args)
    raise CapabilityExecutionError(f"Unsupported expression element: {ast.dump(node)}")


def _number(args: Dict[str, Any], key: str, default: Any = None) -> float:
    value = args.get(key, default)
    if value is None:
        raise CapabilityExecutionError(f"Parameter '{key}' is required")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise CapabilityExecutionError(f"Parameter '{key}' must be a number, got {value!r}") from None


class CalculatorCapability(Capability):
    """Safe arithmetic for function-call tasks.

    Usage from a task's process field::

        calculator(expression="2 * (3 + 4)")
        calculator(operation=basic, operator=+, a=2, b=3)
        calculator(operation=statistics, stat=mean, values=[1, 2, 3])
        calculator(operation=conversion, value=5, from=km, to=m)
        calculator(operation=financial, type=percentage, value=80, percent=15)
    """

    OPERATIONS = ["basic", "statistics", "conversion", "financial"]

    def __init__(self) -> None:
        super().__init__(
            name="calculator",
            description="Perform arithmetic, statistics, unit conversions and simple financial calculations",
        )

    def get_schema(self) -> CapabilitySchema:
        return CapabilitySchema(
            name=self.name,
            description=self.description,
            parameters={
                "expression": {"type": "string", "description": "Arithmetic expression"},
                "operation": {"type": "string", "enum": self.OPERATIONS},
                "operator": {
                    "type": "string",
                    "description": "One of + - * / ^ sqrt abs (or add, subtract, ...)",
                },
                "a": {"type": "number"},
                "b": {"type": "number"},
                "stat": {"type": "string", "enum": sorted(_STATS)},
                "values": {"type": "array"},
                "value": {"type": "number"},
                "from": {"type": "string", "description": "Source unit (km, m, kg, g, lb, celsius, fahrenheit)"},
                "to": {"type": "string", "description": "Target unit"},
                "type": {"type": "string", "enum": ["compound_interest", "percentage"]},
                "principal": {"type": "number"},
                "rate": {"type": "number", "description": "Annual rate in percent"},
                "time": {"type": "number", "description": "Duration in years"},
                "compounds_per_year": {"type": "number"},
                "percent": {"type": "number"},
            },
        )

    def validate_args(self, args: Dict[str, Any]) -> List[str]:
        errors = super().validate_args(args)
        if "expression" not in args and "operation" not in args:
            errors.append("Either 'expression' or 'operation' is required")
        return errors

    async def execute(self, **kwargs: Any) -> Dict[str, Any]:
        if "expression" in kwargs:
            expression = str(kwargs["expression"])
            result = evaluate_expression(expression)
            return {"expression": expression, "result": result}

        operation = kwargs.get("operation")
        if operation == "basic":
            return self._basic(kwargs)
        if operation == "statistics":
            return self._statistics(kwargs)
        if operation == "conversion":
            return self._conversion(kwargs)
        if operation == "financial":
            return self._financial(kwargs)
        raise CapabilityExecutionError(f"Unsupported operation: {operation}")

    def _basic(self, args: Dict[str, Any]) -> Dict[str, Any]:
        op = str(args.get("operator", "")).strip()
        if "a" not in args:
            raise CapabilityExecutionError("Operand 'a' is required")
        a = float(args["a"])

        if op == "sqrt":
            if a < 0:
                raise CapabilityExecutionError("Cannot take the square root of a negative number")
            return {"operation": f"sqrt({a:g})", "result": math.sqrt(a)}
        if op == "abs":
            return {"operation": f"|{a:g}|", "result": abs(a)}

        if "b" not in args:
            raise CapabilityExecutionError(f"Operand 'b' is required for operator {op}")
        b = float(args["b"])

        if op in ("+", "add"):
            result, symbol = a + b, "+"
        elif op in ("-", "subtract"):
            result, symbol = a - b, "-"
        elif op in ("*", "multiply"):
            result, symbol = a * b, "*"
        elif op in ("/", "divide"):
            if b == 0:
                raise CapabilityExecutionError("Division by zero")
            result, symbol = a / b, "/"
        elif op in ("^", "power"):
            check_power(a, b)
            result, symbol = a ** b, "^"
        else:
            raise CapabilityExecutionError(f"Unsupported operator: {op}")

        return {"operation": f"{a:g} {symbol} {b:g}", "result": result}

    def _statistics(self, args: Dict[str, Any]) -> Dict[str, Any]:
        stat = args.get("stat", "mean")
        values = args.get("values") or []
        if stat not in _STATS:
            raise CapabilityExecutionError(f"Unsupported statistic: {stat}")
        if not values:
            raise CapabilityExecutionError("'values' cannot be empty")
        if stat == "stdev" and len(values) < 2:
            raise CapabilityExecutionError("stdev needs at least two values")

        numbers = [float(v) for v in values]
        return {"stat": stat, "count": len(numbers), "result": _STATS[stat](numbers)}

    def _conversion(self, args: Dict[str, Any]) -> Dict[str, Any]:
        value = _number(args, "value")
        source = str(args.get("from", "")).strip().lower()
        target = str(args.get("to", "")).strip().lower()

        if source == "celsius" and target == "fahrenheit":
            result = value * 9 / 5 + 32
        elif source == "fahrenheit" and target == "celsius":
            result = (value - 32) * 5 / 9
        elif (source, target) in _UNIT_FACTORS:
            result = value * _UNIT_FACTORS[(source, target)]
        else:
            raise CapabilityExecutionError(f"Conversion from '{source}' to '{target}' is not supported")

        return {
            "value": value,
            "from": source,
            "to": target,
            "result": result,
            "formatted": f"{value:g} {source} = {result:g} {target}",
        }

    def _financial(self, args: Dict[str, Any]) -> Dict[str, Any]:
        kind = args.get("type")

        if kind == "compound_interest":
            principal = _number(args, "principal")
            rate = _number(args, "rate")
            years = _number(args, "time")
            n = _number(args, "compounds_per_year", 1) or 1.0
            # A = P(1 + r/n)^(nt), rate given in percent
            try:
                amount = principal * math.pow(1 + rate / (100 * n), n * years)
            except OverflowError as e:
                raise CapabilityExecutionError("Compound interest result out of range") from e
            return {
                "principal": principal,
                "rate": rate,
                "time": years,
                "amount": amount,
                "interest": amount - principal,
            }

        if kind == "percentage":
            value = _number(args, "value")
            percent = _number(args, "percent")
            return {"value": value, "percent": percent, "result": value * percent / 100}

        raise CapabilityExecutionError(f"Unsupported financial calculation: {kind}")
