import pytest

from botmeter.cache import ClassificationCache, get_classification_cache
from botmeter.models import Classification, Provenance


@pytest.fixture
def cache(db_path):
    with ClassificationCache(db_path) as cache:
        yield cache


class TestClassificationCache:

    def test_get_many_on_empty_cache(self, cache):
        assert cache.get_many(["anything"]) == {}

    def test_upsert_then_get(self, cache):
        verdict = Classification(is_bot=True, confidence=0.99, bot_type='ai_training', bot_name='GPTBot',
                                 source=Provenance.SIGNATURE, reasoning='signature match')

        assert cache.upsert_many({'GPTBot/1.1': verdict}) == 1
        found = cache.get_many(['GPTBot/1.1', 'missing'])

        assert list(found) == ['GPTBot/1.1']
        cached = found['GPTBot/1.1']
        assert cached.source == Provenance.CACHE
        assert cached.is_bot is True
        assert cached.bot_name == 'GPTBot'
        assert cached.confidence == pytest.approx(0.99)
        assert cached.reasoning is None

    def test_upsert_overwrites(self, cache):
        cache.upsert_many({'ua': Classification(is_bot=False, confidence=0.5)})
        cache.upsert_many({'ua': Classification(is_bot=True, confidence=0.8, bot_type='scraper')})

        cached = cache.get_many(['ua'])['ua']
        assert cached.is_bot is True
        assert cached.bot_type == 'scraper'
        assert cache.stats()['total_entries'] == 1

    def test_get_many_chunks_large_key_sets(self, cache):
        verdicts = {f"agent-{i}": Classification(is_bot=i % 2 == 0, confidence=0.9) for i in range(1200)}
        cache.upsert_many(verdicts)

        assert len(cache.get_many(list(verdicts))) == 1200

    def test_stats_and_clear(self, cache, db_path):
        cache.upsert_many({
            'a': Classification(is_bot=True, confidence=0.9),
            'b': Classification(is_bot=False, confidence=0.7),
        })

        stats = cache.stats()
        assert (stats['total_entries'], stats['bots'], stats['humans']) == (2, 1, 1)
        assert stats['database_path'] == db_path
        assert stats['newest_entry'] is not None

        assert cache.clear() == 2
        assert cache.stats()['total_entries'] == 0

    def test_persists_across_connections(self, db_path):
        with ClassificationCache(db_path) as first:
            first.upsert_many({'ua': Classification(is_bot=True, confidence=0.9)})
        with ClassificationCache(db_path) as second:
            assert 'ua' in second.get_many(['ua'])

    def test_disabled_context_yields_none(self, db_path):
        with get_classification_cache(db_path, enabled=False) as cache:
            assert cache is None
