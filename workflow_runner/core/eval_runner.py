"""Offline evaluation of workflows against fixture cases."""

import asyncio
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple
from urllib.parse import urlparse

from ..models.core import (
    CaseResult, EvalCase, EvalConstraints, EvalResults, RunStatus, WorkflowEvalRun, WorkflowRecord
)
from ..storage.repository import EvalRepository, WorkflowRepository
from .exceptions import NotFoundError
from .logging import get_logger
from .orchestrator import RunOrchestrator

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def _feed_url(feed: Any) -> Optional[str]:
    if not isinstance(feed, dict):
        return None
    return feed.get("rss_url") or feed.get("url")


def _hostname(url: Optional[str]) -> Optional[str]:
    if not url or not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return (parsed.hostname or "").lower() or None


def matches_domain(url: Optional[str], domain: str) -> bool:
    """True when the URL's hostname contains ``domain``, ignoring case."""
    hostname = _hostname(url)
    return hostname is not None and domain.lower() in hostname


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_fresh(feed: Any, freshness_days: Optional[float], now: Optional[datetime] = None) -> bool:
    """True when the feed's ``validation.last_published_at`` is within the window."""
    if not freshness_days:
        return True
    validation = feed.get("validation") if isinstance(feed, dict) else None
    published = _parse_timestamp((validation or {}).get("last_published_at"))
    if published is None:
        return False
    age = ((now or datetime.now(timezone.utc)) - published).total_seconds() / SECONDS_PER_DAY
    return age <= freshness_days


def score_constraints(
    constraints: Optional[EvalConstraints],
    output: Any,
    now: Optional[datetime] = None
) -> Tuple[float, List[str], List[str]]:
    """
    Score an output's ``feeds`` list against case constraints.

    Without constraints the output is not checked at all.

    Returns:
        ``(score, errors, warnings)`` with the score starting at 100 and not clamped
    """
    errors: List[str] = []
    warnings: List[str] = []
    score = 100.0
    if constraints is None:
        return score, errors, warnings

    feeds = output.get("feeds") if isinstance(output, dict) else None
    if not isinstance(feeds, list):
        feeds = []

    if constraints.min_feeds is not None and len(feeds) < constraints.min_feeds:
        errors.append(f"Expected at least {constraints.min_feeds} feeds, got {len(feeds)}")
        score -= 20

    if constraints.max_feeds is not None and len(feeds) > constraints.max_feeds:
        warnings.append(f"Expected at most {constraints.max_feeds} feeds, got {len(feeds)}")
        score -= 10

    if constraints.must_include_domains:
        urls = [_feed_url(feed) for feed in feeds]
        missing = [
            domain for domain in constraints.must_include_domains
            if not any(matches_domain(url, domain) for url in urls)
        ]
        if missing:
            errors.append(f"Missing required domains: {', '.join(missing)}")
            score -= 15 * len(missing)

    if constraints.freshness_days:
        fresh = [feed for feed in feeds if is_fresh(feed, constraints.freshness_days, now)]
        if not fresh:
            errors.append(f"No feeds are fresh (within {constraints.freshness_days:g} days)")
            score -= 20
        elif len(fresh) < len(feeds):
            warnings.append(f"{len(feeds) - len(fresh)} feeds are not fresh")
            score -= 5

    invalid = [feed for feed in feeds if _hostname(_feed_url(feed)) is None]
    if invalid:
        errors.append(f"{len(invalid)} feeds have invalid URLs")
        score -= 10 * len(invalid)

    if constraints.min_score is not None and score < constraints.min_score:
        errors.append(f"Score {score:g} is below minimum {constraints.min_score:g}")

    return score, errors, warnings


def score_case(case: EvalCase, output: Any, now: Optional[datetime] = None) -> CaseResult:
    """Score one case's workflow output against its expected output and constraints."""
    score, errors, warnings = score_constraints(case.constraints, output, now)

    if case.expected_output is not None:
        if output == case.expected_output:
            # An exact match is authoritative over constraint findings
            return CaseResult(case_id=case.id, passed=True, score=100.0, actual_output=output)
        errors.insert(0, "Output does not match expected output")
        score = 0.0

    score = max(0.0, min(100.0, score))
    min_score = case.constraints.min_score if case.constraints and case.constraints.min_score is not None else 0
    return CaseResult(
        case_id=case.id,
        passed=not errors and score >= min_score,
        score=score,
        errors=errors,
        warnings=warnings,
        actual_output=output,
    )


def aggregate_results(case_results: List[CaseResult], cases: List[EvalCase]) -> EvalResults:
    """Combine case scores. An eval with no cases does not pass."""
    names = {case.id: case.name for case in cases}
    overall = sum(r.score for r in case_results) / len(case_results) if case_results else 0.0
    errors = [
        f"{names.get(result.case_id, result.case_id)}: {error}"
        for result in case_results
        for error in result.errors
    ]
    return EvalResults(
        case_results=case_results,
        overall_score=round(overall, 2),
        passed=bool(case_results) and all(r.passed for r in case_results),
        errors=errors,
    )


class EvalRunner:
    """Runs every case of an eval through the orchestrator and records the scores."""

    def __init__(
        self,
        eval_repository: EvalRepository,
        workflow_repository: WorkflowRepository,
        orchestrator: RunOrchestrator,
        concurrency: int = 1
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.eval_repository = eval_repository
        self.workflow_repository = workflow_repository
        self.orchestrator = orchestrator
        self.concurrency = concurrency

    async def run_eval(self, eval_id: str) -> WorkflowEvalRun:
        """
        Execute all cases of an eval and persist one eval run.

        Raises:
            NotFoundError: If the eval or its workflow does not exist
        """
        eval_record = self.eval_repository.get_workflow_eval(eval_id)
        if eval_record is None:
            raise NotFoundError("Eval", eval_id)

        workflow = self.workflow_repository.get_workflow(eval_record.workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", eval_record.workflow_id)

        cases = eval_record.cases_json
        logger.info(f"Running {len(cases)} cases for eval: {eval_record.name}")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_bounded(case: EvalCase) -> CaseResult:
            async with semaphore:
                return await self._run_case(workflow, case)

        case_results = list(await asyncio.gather(*(run_bounded(case) for case in cases)))
        results = aggregate_results(case_results, cases)

        eval_run = self.eval_repository.create_workflow_eval_run(eval_id, results)
        logger.info(
            f"Eval {eval_record.name} completed: {results.overall_score}% overall score, "
            f"{'PASSED' if results.passed else 'FAILED'}"
        )
        return eval_run

    async def _run_case(self, workflow: WorkflowRecord, case: EvalCase) -> CaseResult:
        logger.info(f"Running eval case: {case.name}")
        try:
            run = await self.orchestrator.run(workflow, case.input if case.input is not None else {})
        except Exception as e:
            logger.error(f"Eval case {case.name} failed: {str(e)}")
            return CaseResult(
                case_id=case.id,
                passed=False,
                score=0,
                errors=[str(e) or "Workflow execution failed"],
            )

        if run.status in (RunStatus.FAILED, RunStatus.CANCELLED):
            return CaseResult(
                case_id=case.id,
                passed=False,
                score=0,
                errors=[run.error_message or f"Workflow run {run.status.value}"],
                actual_output=run.output_json,
                run_id=run.id,
            )

        result = score_case(case, run.output_json)
        result.run_id = run.id
        if run.status == RunStatus.PARTIAL:
            result.warnings.append(
                "Workflow run finished partial" + (f": {run.error_message}" if run.error_message else "")
            )
        return result
