import random

import pytest

from src.tracker.context import build_context
from fakes import POLLING, FakeApi, ManualScheduler


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def tracker(api, scheduler):
    return build_context(api=api, polling=POLLING, scheduler=scheduler, rng=random.Random(7))
