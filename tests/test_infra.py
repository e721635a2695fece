import statistics

import pytest

from boxoffice.infra import timings
from boxoffice.infra.sql import normalize_async_url

from conftest import run


@pytest.fixture(autouse=True)
def clean_timings():
    timings.reset()
    yield
    timings.reset()


class TestTimings:
    def test_running_stats_match_batch(self):
        samples = [0.12, 0.5, 0.33, 0.07, 0.91]
        for value in samples:
            timings.record("store.create", value)

        stats = timings.summary()["store.create"]
        assert stats["n"] == 5
        assert stats["mean"] == pytest.approx(statistics.mean(samples))
        assert stats["std"] == pytest.approx(statistics.stdev(samples))
        assert stats["max"] == 0.91

    def test_single_sample_has_no_spread(self):
        timings.record("mail.send", 0.2)
        assert timings.summary()["mail.send"]["std"] == 0.0

    def test_timeit_records_failures(self):
        async def boom():
            async with timings.timeit("payments.create_checkout"):
                raise RuntimeError("provider down")

        with pytest.raises(RuntimeError):
            run(boom())
        assert timings.summary()["payments.create_checkout"]["n"] == 1


@pytest.mark.parametrize("url, expected", [
    ("sqlite:///orders.db", "sqlite+aiosqlite:///orders.db"),
    ("postgres://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
    ("postgresql://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
    ("postgresql+asyncpg://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
])
def test_async_driver_urls(url, expected):
    assert normalize_async_url(url) == expected
