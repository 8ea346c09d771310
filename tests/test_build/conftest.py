"""Fixtures for build tests."""

import pytest

from taskweave import Reporter, Scheduler


@pytest.fixture
def reporter():
    return Reporter()


@pytest.fixture
def scheduler_factory(run_context, reporter):
    """Create a Scheduler for a registry, sharing the test's context and
    reporter."""

    def factory(registry, context=None):
        return Scheduler(registry, context or run_context, reporter=reporter)

    return factory
