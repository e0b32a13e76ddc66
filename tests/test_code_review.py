"""
Tests for the sample Code Review workflow.
"""

import pytest
from typing import Any, Dict

from nodeflow.engine.exceptions import MaxStepsExceededError
from nodeflow.workflows.code_review import (
    create_batch_review_flow,
    create_code_review_flow,
    create_parallel_review_flow,
    detect_issues,
    extract_functions,
    measure_complexity,
    review_code,
    score_quality,
)


SAMPLE_CODE = '''
def calculate_total(items):
    total = 0
    for item in items:
        if item.price > 0:
            if item.quantity > 0:
                if item.discount:
                    total += item.price * item.quantity * (1 - item.discount)
                else:
                    total += item.price * item.quantity
    return total

def process_data(data):
    result = []
    for i in range(len(data)):
        if data[i] > 100:
            result.append(data[i] * 2)
        else:
            result.append(data[i])
    return result
'''

DOCUMENTED_CODE = '''
def add(a, b):
    """Add two numbers."""
    return a + b
'''

INVALID_CODE = "def broken(:\n    pass"


# ============================================================
# Analysis Helper Tests
# ============================================================

class TestAnalysis:
    """Tests for the pure analysis helpers."""

    def test_extract_functions(self):
        """Test function extraction."""
        result = extract_functions(SAMPLE_CODE)
        assert result["parse_success"] is True
        assert result["function_count"] == 2
        names = [f["name"] for f in result["functions"]]
        assert names == ["calculate_total", "process_data"]
        assert result["functions"][0]["branches"] == 4
        assert result["functions"][0]["has_docstring"] is False

    def test_extract_invalid(self):
        """Test that syntax errors are reported, not raised."""
        result = extract_functions(INVALID_CODE)
        assert result["parse_success"] is False
        assert "Syntax error" in result["error"]

    def test_measure_complexity(self):
        """Test complexity metrics."""
        functions = extract_functions(SAMPLE_CODE)["functions"]
        metrics = measure_complexity(SAMPLE_CODE, functions)
        assert metrics["cyclomatic_complexity"] == 7
        assert metrics["complexity_score"] == 10

    def test_detect_issues(self):
        """Test issue detection."""
        functions = [{
            "name": "f",
            "args": ["a", "b", "c", "d", "e", "f"],
            "has_docstring": True,
            "line_count": 5,
            "branches": 0,
        }]
        issues = detect_issues(functions, complexity_score=3)
        assert [issue["type"] for issue in issues] == ["too_many_arguments", "complex_module"]

    def test_score_quality_bounds(self):
        """Test that scores stay within 1-10."""
        many = [{"severity": "high"}] * 10
        assert score_quality(many) == 1.0
        assert score_quality([], improvement=5.0) == 10.0


# ============================================================
# Workflow Tests
# ============================================================

class TestCodeReviewWorkflow:
    """Integration tests for the review flows."""

    def test_review_passes(self):
        """Test a review that meets the threshold on the first pass."""
        review = review_code(SAMPLE_CODE, quality_threshold=7.0)

        assert review["quality_score"] == 9.0
        assert review["issue_count"] == 2
        assert review.get("iterations", 0) == 0
        assert review["summary"].startswith("main: quality 9.0")
        assert "code" not in review

    def test_review_improves_until_threshold(self):
        """Test the improvement loop."""
        review = review_code(SAMPLE_CODE, quality_threshold=9.5)

        assert review["iterations"] == 1
        assert review["quality_score"] == 10.0
        assert len(review["suggestions"]) == 2

    def test_unreachable_threshold_hits_step_guard(self):
        """Test that a review that can never pass is stopped."""
        with pytest.raises(MaxStepsExceededError):
            review_code(SAMPLE_CODE, quality_threshold=11.0)

    def test_invalid_code_skips_analysis(self):
        """Test the invalid-code route."""
        shared: Dict[str, Any] = {"sources": {"main": INVALID_CODE}}
        execution = create_code_review_flow().execute(shared)

        assert execution.visited == ["extract", "summarize"]
        assert execution.result == "done"
        assert "Syntax error" in shared["reviews"]["main"]["summary"]

    def test_batch_review(self):
        """Test reviewing several sources in order."""
        shared: Dict[str, Any] = {
            "sources": {"good": DOCUMENTED_CODE, "bad": INVALID_CODE},
        }
        execution = create_batch_review_flow().execute(shared)

        assert set(shared["reviews"]) == {"good", "bad"}
        assert shared["reviews"]["good"]["quality_score"] == 10.0
        assert execution.visited == [
            "extract", "complexity", "issues", "summarize",
            "extract", "summarize",
        ]

    def test_graph_shape(self):
        """Test the review graph structure."""
        graph = create_code_review_flow().graph
        assert len(graph.nodes) == 5
        assert graph.has_cycles() is True
        assert graph.terminal_nodes() == ["summarize"]


class TestParallelCodeReview:
    """Integration tests for the parallel review flow."""

    @pytest.mark.asyncio
    async def test_parallel_review(self):
        """Test that parallel reviews merge back into one context."""
        shared: Dict[str, Any] = {
            "sources": {"sample": SAMPLE_CODE, "good": DOCUMENTED_CODE, "bad": INVALID_CODE},
        }
        summaries = await create_parallel_review_flow(max_concurrency=2).run_async(shared)

        assert list(summaries) == ["sample", "good", "bad"]
        assert summaries["sample"].startswith("sample: quality 9.0")
        assert "Syntax error" in summaries["bad"]
        assert shared["sources"]["good"] == DOCUMENTED_CODE

    @pytest.mark.asyncio
    async def test_parallel_matches_sequential(self):
        """Test that parallel and sequential reviews agree."""
        sources = {"sample": SAMPLE_CODE, "good": DOCUMENTED_CODE}

        sequential: Dict[str, Any] = {"sources": dict(sources)}
        create_batch_review_flow(quality_threshold=9.5).run(sequential)

        parallel: Dict[str, Any] = {"sources": dict(sources)}
        await create_parallel_review_flow(quality_threshold=9.5).run_async(parallel)

        assert parallel["reviews"] == sequential["reviews"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
