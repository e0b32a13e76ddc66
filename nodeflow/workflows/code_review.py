"""
Code Review Workflow Implementation.

Sample workflow demonstrating the engine:
1. Extract functions from code
2. Measure complexity
3. Detect issues and score quality
4. Suggest improvements
5. Loop until quality_score >= quality_threshold

Sources live in ``shared["sources"]`` (name -> code) and each review is
written to ``shared["reviews"][name]``. Nodes pick the source to work on from
the ``source_name`` param, which the batch flows set per item.
"""

from typing import Any, Dict, List, Optional
import ast
import logging

from nodeflow.engine.async_flow import AsyncParallelBatchFlow
from nodeflow.engine.flow import BatchFlow, Flow
from nodeflow.engine.node import BaseNode, Node


logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "main"

_BRANCH_TYPES = (
    ast.If, ast.For, ast.AsyncFor, ast.While, ast.Try,
    ast.With, ast.AsyncWith, ast.BoolOp, ast.IfExp, ast.ExceptHandler,
)

_ISSUE_WEIGHTS = {"low": 0.5, "medium": 1.0, "high": 2.0}


# ============================================================
# Analysis helpers
# ============================================================

def extract_functions(code: str) -> Dict[str, Any]:
    """Extract function definitions (name, args, size, branches) from Python code."""
    try:
        tree = ast.parse(code)
    except SyntaxError as e:
        return {
            "functions": [],
            "function_count": 0,
            "parse_success": False,
            "error": f"Syntax error in code: {e}",
        }

    functions = []
    for item in ast.walk(tree):
        if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
            functions.append({
                "name": item.name,
                "lineno": item.lineno,
                "args": [arg.arg for arg in item.args.args],
                "has_docstring": ast.get_docstring(item) is not None,
                "line_count": (item.end_lineno or item.lineno) - item.lineno + 1,
                "branches": sum(isinstance(child, _BRANCH_TYPES) for child in ast.walk(item)),
            })

    return {
        "functions": functions,
        "function_count": len(functions),
        "parse_success": True,
    }


def measure_complexity(code: str, functions: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Compute simple size and branching metrics with a 1-10 score (higher is simpler)."""
    loc = len([
        line for line in code.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ])
    complexity = 1 + sum(f["branches"] for f in functions)

    score = 10
    if complexity > 10:
        score -= 2
    if complexity > 20:
        score -= 2
    if loc > 200:
        score -= 1
    score -= len([f for f in functions if f["line_count"] > 50])

    return {
        "lines_of_code": loc,
        "cyclomatic_complexity": complexity,
        "complexity_score": max(1, score),
    }


def detect_issues(functions: List[Dict[str, Any]], complexity_score: int) -> List[Dict[str, Any]]:
    issues = []
    for f in functions:
        if not f["has_docstring"]:
            issues.append({"function": f["name"], "type": "missing_docstring", "severity": "low"})
        if len(f["args"]) > 5:
            issues.append({"function": f["name"], "type": "too_many_arguments", "severity": "medium"})
        if f["line_count"] > 50:
            issues.append({"function": f["name"], "type": "long_function", "severity": "medium"})
        if f["branches"] > 10:
            issues.append({"function": f["name"], "type": "high_branching", "severity": "high"})
    if complexity_score < 5:
        issues.append({"function": None, "type": "complex_module", "severity": "high"})
    return issues


def score_quality(issues: List[Dict[str, Any]], improvement: float = 0.0) -> float:
    penalty = sum(_ISSUE_WEIGHTS[issue["severity"]] for issue in issues)
    return round(min(10.0, max(1.0, 10.0 - penalty) + improvement), 2)


_SUGGESTIONS = {
    "missing_docstring": "Add a docstring describing '{function}'",
    "too_many_arguments": "Group the arguments of '{function}' into a parameter object",
    "long_function": "Split '{function}' into smaller functions",
    "high_branching": "Reduce the branching in '{function}' with early returns or lookup tables",
    "complex_module": "Break the module into smaller, focused modules",
}


def suggest_improvements(issues: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "priority": issue["severity"],
            "suggestion": _SUGGESTIONS[issue["type"]].format(function=issue["function"]),
        }
        for issue in issues
    ]


# ============================================================
# Nodes
# ============================================================

def _source_name(node: BaseNode) -> str:
    return node.params.get("source_name", DEFAULT_SOURCE)


def _review(shared: Dict[str, Any], name: str) -> Dict[str, Any]:
    return shared.setdefault("reviews", {}).setdefault(name, {})


class ExtractFunctions(Node):
    """Parse the source and record its functions."""

    def prep(self, shared):
        return shared.get("sources", {}).get(_source_name(self), "")

    def exec(self, code):
        return extract_functions(code)

    def post(self, shared, prep_res, exec_res):
        review = _review(shared, _source_name(self))
        review.update(exec_res)
        review["code"] = prep_res
        logger.info(f"[{_source_name(self)}] Extracted {exec_res['function_count']} functions")
        return "default" if exec_res["parse_success"] else "invalid"


class MeasureComplexity(Node):
    def prep(self, shared):
        review = _review(shared, _source_name(self))
        return review["code"], review["functions"]

    def exec(self, prep_res):
        code, functions = prep_res
        return measure_complexity(code, functions)

    def post(self, shared, prep_res, exec_res):
        _review(shared, _source_name(self)).update(exec_res)
        logger.info(f"[{_source_name(self)}] Complexity score: {exec_res['complexity_score']}")


class DetectIssues(Node):
    """Detect issues, score quality, and route on the quality threshold."""

    def prep(self, shared):
        review = _review(shared, _source_name(self))
        return review["functions"], review["complexity_score"], review.get("improvement", 0.0)

    def exec(self, prep_res):
        functions, complexity_score, improvement = prep_res
        issues = detect_issues(functions, complexity_score)
        return {
            "issues": issues,
            "issue_count": len(issues),
            "quality_score": score_quality(issues, improvement),
        }

    def post(self, shared, prep_res, exec_res):
        review = _review(shared, _source_name(self))
        review.update(exec_res)
        threshold = float(self.params.get("quality_threshold", 7.0))
        if exec_res["quality_score"] >= threshold:
            logger.info(f"[{_source_name(self)}] Quality {exec_res['quality_score']} meets threshold {threshold}")
            return "pass"
        logger.info(f"[{_source_name(self)}] Quality {exec_res['quality_score']} below threshold {threshold}")
        return "fail"


class SuggestImprovements(Node):
    """Record suggestions; each round raises the quality score by ``improvement_step``."""

    def prep(self, shared):
        return _review(shared, _source_name(self))["issues"]

    def exec(self, issues):
        return suggest_improvements(issues)

    def post(self, shared, prep_res, exec_res):
        review = _review(shared, _source_name(self))
        review["suggestions"] = exec_res
        review["improvement"] = review.get("improvement", 0.0) + float(
            self.params.get("improvement_step", 1.0)
        )
        review["iterations"] = review.get("iterations", 0) + 1


class Summarize(Node):
    def post(self, shared, prep_res, exec_res):
        name = _source_name(self)
        review = _review(shared, name)
        review.pop("code", None)
        if review.get("parse_success"):
            review["summary"] = (
                f"{name}: quality {review['quality_score']} after "
                f"{review.get('iterations', 0)} improvement round(s), "
                f"{review['issue_count']} issue(s) remaining"
            )
        else:
            review["summary"] = f"{name}: {review.get('error', 'could not be parsed')}"
        return "done"


# ============================================================
# Flow factories
# ============================================================

def build_review_graph() -> BaseNode:
    """
    Build the review graph and return its start node.

    ```
    extract -> complexity -> issues -(pass)-> summarize
       |                      |  ^
       (invalid)           (fail) |
       v                      v  |
    summarize               improve
    ```
    """
    extract = ExtractFunctions(name="extract")
    complexity = MeasureComplexity(name="complexity")
    issues = DetectIssues(name="issues")
    improve = SuggestImprovements(name="improve")
    summarize = Summarize(name="summarize")

    extract >> complexity >> issues
    extract - "invalid" >> summarize
    issues - "pass" >> summarize
    issues - "fail" >> improve
    improve >> issues
    return extract


class ReviewEachSource(BatchFlow):
    """Review every source in ``shared["sources"]``, one after another."""

    def prep(self, shared):
        return [{"source_name": name} for name in shared.get("sources", {})]


class ReviewSourcesInParallel(AsyncParallelBatchFlow):
    """Review every source in ``shared["sources"]`` concurrently."""

    async def prep_async(self, shared):
        return [{"source_name": name} for name in shared.get("sources", {})]

    async def post_async(self, shared, prep_res, exec_res):
        return {name: review.get("summary") for name, review in shared.get("reviews", {}).items()}


def create_code_review_flow(quality_threshold: float = 7.0, max_steps: Optional[int] = 50) -> Flow:
    """
    Create a Code Review flow for a single source.

    Args:
        quality_threshold: Minimum quality score to pass
        max_steps: Guard against reviews that can never reach the threshold
    """
    return Flow(
        start=build_review_graph(),
        name="code_review",
        params={"quality_threshold": quality_threshold},
        max_steps=max_steps,
    )


def create_batch_review_flow(quality_threshold: float = 7.0, max_steps: Optional[int] = 50) -> BatchFlow:
    return ReviewEachSource(
        start=build_review_graph(),
        name="batch_code_review",
        params={"quality_threshold": quality_threshold},
        max_steps=max_steps,
    )


def create_parallel_review_flow(
    quality_threshold: float = 7.0,
    max_steps: Optional[int] = 50,
    max_concurrency: Optional[int] = None,
) -> ReviewSourcesInParallel:
    return ReviewSourcesInParallel(
        start=build_review_graph(),
        name="parallel_code_review",
        params={"quality_threshold": quality_threshold},
        max_steps=max_steps,
        max_concurrency=max_concurrency,
    )


def review_code(code: str, quality_threshold: float = 7.0) -> Dict[str, Any]:
    """Review a single piece of code and return its review."""
    shared: Dict[str, Any] = {"sources": {DEFAULT_SOURCE: code}}
    create_code_review_flow(quality_threshold).run(shared)
    return shared["reviews"][DEFAULT_SOURCE]
