import pytest

from app.database.models import TokenBucket
from app.services.price_catalog import LARGE_PACK_TOKENS, PriceCatalog


@pytest.fixture
def catalog():
    return PriceCatalog({'7000_tokens': 7000, 'price_abc': 40000})


def test_lookup_exact_and_fragment(catalog):
    assert catalog.lookup('price_abc') == 40000
    assert catalog.lookup('prod_7000_tokens_v2') == 7000
    assert catalog.lookup('price_unknown') is None
    assert catalog.lookup(None) is None
    assert 'price_abc' in catalog


def test_resolve_tokens_prefers_catalog_over_metadata(catalog):
    assert catalog.resolve_tokens('price_abc', metadata={'tokens': '5'}) == 40000


def test_resolve_tokens_falls_back_to_metadata(catalog):
    assert catalog.resolve_tokens('price_other', metadata={'tokens': '2500'}) == 2500


@pytest.mark.parametrize(
    ('unit_amount', 'expected'),
    [(500, 7000), (1000, 7000), (4999, 40000), (5001, LARGE_PACK_TOKENS), (None, 7000)],
)
def test_resolve_tokens_price_tiers(catalog, unit_amount, expected):
    assert catalog.resolve_tokens('price_other', metadata={'tokens': 'many'}, unit_amount=unit_amount) == expected


def test_resolve_bucket():
    assert PriceCatalog.resolve_bucket('price_x', metadata={'token_type': 'addons'}) is TokenBucket.ADDONS
    assert PriceCatalog.resolve_bucket('price_addon_pack') is TokenBucket.ADDONS
    assert PriceCatalog.resolve_bucket('price_x', metadata={'token_type': 'bogus'}) is TokenBucket.SUBSCRIPTION
    assert PriceCatalog.resolve_bucket('price_monthly') is TokenBucket.SUBSCRIPTION
