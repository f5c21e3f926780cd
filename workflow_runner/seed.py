"""Seed data: the feed discovery workflow and its evaluation."""

from typing import Any, Dict, List

from .core.logging import get_logger
from .models.core import WorkflowEvalRecord, WorkflowRecord
from .storage.repository import EvalRepository, WorkflowRepository

logger = get_logger(__name__)

FEED_DISCOVERY_SLUG = "feed-discovery"
FEED_DISCOVERY_EVAL_NAME = "Feed Discovery Evaluation"

FEED_DISCOVERY_DEFINITION: Dict[str, Any] = {
    "name": "Feed Discovery",
    "description": "Suggest sources for a set of interests, find their RSS feeds and keep the valid ones",
    "steps": [
        {
            "id": "suggest_sources",
            "name": "Suggest sources",
            "type": "llm",
            "prompt_system": (
                "You are a research librarian who recommends high quality blogs and publications "
                "that publish RSS or Atom feeds."
            ),
            "prompt_user": (
                "Suggest up to {{search_limit}} websites for a reader interested in: {{interests}}.\n"
                "Selection criteria: {{criteria}}\n\n"
                "Return a JSON object of the form "
                "{\"candidates\": [{\"name\": \"...\", \"website_url\": \"https://...\", \"reason\": \"...\"}]}."
            ),
            "output_schema": {"candidates": "list"},
            "temperature": 0.3,
        },
        {
            "id": "discover_feeds",
            "name": "Discover feed URLs",
            "type": "tool",
            "tool_name": "discover_feeds",
            "input_mapping": {"candidates": "steps.suggest_sources.output.candidates"},
        },
        {
            "id": "validate_feeds",
            "name": "Validate feeds",
            "type": "tool",
            "tool_name": "validate_feeds",
            "input_mapping": {"feeds": "steps.discover_feeds.output.feeds"},
        },
        {
            "id": "select_feeds",
            "name": "Select valid feeds",
            "type": "transform",
            "transform": "select_valid_feeds",
        },
        {
            "id": "require_feeds",
            "name": "Require at least one feed",
            "type": "gate",
            "condition": "len(feeds) >= 1",
            "input_mapping": {"feeds": "steps.select_feeds.output.feeds"},
        },
        {
            "id": "final_feeds",
            "name": "Final feed list",
            "type": "transform",
            "transform": "flatten_feeds",
            "input_mapping": {"feeds": "steps.select_feeds.output.feeds"},
        },
    ],
}

FEED_DISCOVERY_CASES: List[Dict[str, Any]] = [
    {
        "id": "case-1",
        "name": "AI and Machine Learning Feeds",
        "input": {
            "interests": "AI, machine learning, deep learning",
            "criteria": "thought leadership, technical depth, original research",
            "search_limit": 10,
        },
        "constraints": {"min_feeds": 5, "max_feeds": 15, "freshness_days": 30},
    },
    {
        "id": "case-2",
        "name": "Startup and Entrepreneurship",
        "input": {
            "interests": "startups, entrepreneurship, venture capital",
            "criteria": "practical advice, contrarian views, founder stories",
            "search_limit": 10,
        },
        "constraints": {"min_feeds": 5, "max_feeds": 15, "freshness_days": 30},
    },
    {
        "id": "case-3",
        "name": "Economics and Finance",
        "input": {
            "interests": "economics, finance, markets",
            "criteria": "data-driven analysis, market insights",
            "search_limit": 10,
        },
        "constraints": {"min_feeds": 5, "max_feeds": 15, "freshness_days": 30},
    },
    {
        "id": "case-4",
        "name": "Specific Domain Test",
        "input": {
            "interests": "essays similar to Paul Graham's writing",
            "criteria": "essay format, contrarian views, startup advice",
            "search_limit": 10,
        },
        "constraints": {
            "min_feeds": 3,
            "max_feeds": 10,
            "freshness_days": 60,
            "must_include_domains": ["paulgraham.com"],
        },
    },
    {
        "id": "case-5",
        "name": "Minimal Input Test",
        "input": {"interests": "tech", "criteria": "", "search_limit": 5},
        "constraints": {"min_feeds": 3, "max_feeds": 20},
    },
]


def seed_feed_discovery_workflow(repository: WorkflowRepository) -> WorkflowRecord:
    """Create the feed discovery workflow, or store the current definition as a new version."""
    existing = repository.get_workflow_by_slug(FEED_DISCOVERY_SLUG)
    if existing:
        logger.info("Feed discovery workflow already exists, updating definition")
        return repository.update_workflow(existing.id, FEED_DISCOVERY_DEFINITION)

    workflow = repository.create_workflow(
        slug=FEED_DISCOVERY_SLUG,
        name=FEED_DISCOVERY_DEFINITION["name"],
        definition_json=FEED_DISCOVERY_DEFINITION,
    )
    logger.info(f"Created feed discovery workflow: {workflow.id}")
    return workflow


def seed_feed_discovery_eval(workflow: WorkflowRecord, eval_repository: EvalRepository) -> WorkflowEvalRecord:
    """Create the feed discovery eval unless one with the same name exists."""
    for existing in eval_repository.get_workflow_evals(workflow.id):
        if existing.name == FEED_DISCOVERY_EVAL_NAME:
            logger.info("Feed discovery eval already exists, skipping seed")
            return existing

    workflow_eval = eval_repository.create_workflow_eval(
        workflow.id, FEED_DISCOVERY_EVAL_NAME, FEED_DISCOVERY_CASES
    )
    logger.info(f"Created feed discovery eval: {workflow_eval.id}")
    return workflow_eval


def seed_all(repository: WorkflowRepository, eval_repository: EvalRepository) -> Dict[str, Any]:
    """Seed every workflow and eval."""
    workflow = seed_feed_discovery_workflow(repository)
    workflow_eval = seed_feed_discovery_eval(workflow, eval_repository)
    return {"workflows": [workflow], "evals": [workflow_eval]}
