"""Built-in demo tools: calculator, weather and web search."""

import ast
import hashlib
import math
import operator
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from chatcore.tools.base import ToolDefinition

# Largest power of ten a float can hold
_MAX_MAGNITUDE = 308


def _power(base: float, exponent: float) -> float:
    if base < 0 and not exponent.is_integer():
        raise ValueError("Fractional power of a negative number")
    if abs(base) > 1 and exponent * math.log10(abs(base)) > _MAX_MAGNITUDE:
        raise ValueError("Result is too large")
    return operator.pow(base, exponent)


_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: _power,
    ast.Mod: operator.mod,
}
_UNARY_OPERATORS = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_WEATHER_CONDITIONS = ["Sunny", "Cloudy", "Rainy", "Partly Cloudy", "Stormy"]


class CalculateInput(BaseModel):
    """Input schema for the calculator tool."""

    expression: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Arithmetic expression to evaluate",
        examples=["2 + 2", "(10 * 5) - 3"],
    )

    @field_validator("expression")
    @classmethod
    def validate_characters(cls, v: str) -> str:
        allowed = set("0123456789+-*/%().^ ")
        if not set(v) <= allowed:
            raise ValueError("Only numbers, + - * / % ^ ( ) and . are allowed")
        return v


class WeatherInput(BaseModel):
    """Input schema for the weather tool."""

    location: str = Field(..., min_length=2, max_length=100, description="City name or location")


class SearchInput(BaseModel):
    """Input schema for the web search tool."""

    query: str = Field(..., min_length=1, max_length=200, description="Search query or keywords")
    max_results: int = Field(3, ge=1, le=10)


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression without ``eval``."""
    tree = ast.parse(expression.replace("^", "**"), mode="eval")

    def _eval(node: ast.AST) -> float:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, int | float):
            # Floats overflow instead of growing without bound like ints
            return float(node.value)
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            return _BINARY_OPERATORS[type(node.op)](_eval(node.left), _eval(node.right))
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
            return _UNARY_OPERATORS[type(node.op)](_eval(node.operand))
        raise ValueError(f"Unsupported expression element: {type(node).__name__}")

    try:
        result = float(_eval(tree))
    except OverflowError as e:
        raise ValueError("Result is too large") from e
    if not math.isfinite(result):
        raise ValueError("Result is not a finite number")
    return result


async def calculate_handler(params: CalculateInput) -> dict[str, Any]:
    result = evaluate_expression(params.expression)
    return {"expression": params.expression, "result": result}


async def weather_handler(params: WeatherInput) -> dict[str, Any]:
    # Deterministic per location so repeated calls agree
    digest = int(hashlib.sha256(params.location.lower().encode()).hexdigest(), 16)
    return {
        "location": params.location,
        "temperature": 50 + digest % 40,
        "unit": "fahrenheit",
        "condition": _WEATHER_CONDITIONS[digest % len(_WEATHER_CONDITIONS)],
        "humidity": 40 + (digest >> 8) % 40,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def search_handler(params: SearchInput) -> dict[str, Any]:
    slug = params.query.lower().replace(" ", "-")
    results = [
        {
            "title": f"Understanding {params.query} - Comprehensive Guide",
            "url": f"https://example.com/guide/{slug}",
            "snippet": f"A comprehensive guide to {params.query}.",
        },
        {
            "title": f"{params.query} - Wikipedia",
            "url": f"https://wikipedia.org/wiki/{params.query.replace(' ', '_')}",
            "snippet": f"{params.query} refers to...",
        },
        {
            "title": f"Latest news about {params.query}",
            "url": f"https://news.example.com/{slug}",
            "snippet": f"Recent developments about {params.query}.",
        },
    ]
    return {"query": params.query, "results": results[: params.max_results]}


def builtin_tools() -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name="calculate",
            description="Evaluate an arithmetic expression with + - * / % ^ and parentheses.",
            input_schema_class=CalculateInput,
            handler=calculate_handler,
        ),
        ToolDefinition(
            name="get_weather",
            description="Get current weather for a location.",
            input_schema_class=WeatherInput,
            handler=weather_handler,
        ),
        ToolDefinition(
            name="search_web",
            description="Search the web and return titles, URLs and snippets.",
            input_schema_class=SearchInput,
            handler=search_handler,
        ),
    ]
