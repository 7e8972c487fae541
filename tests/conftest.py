import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from fakes import RECIPIENT, TOKEN, FakeRPC  # noqa: E402
from sale_indexer.config import SaleConfig  # noqa: E402
from sale_indexer.storage import Storage  # noqa: E402


@pytest.fixture(scope="function")
def storage(tmp_path):
    st = Storage(str(tmp_path / "indexer.db"))
    yield st
    st.close()


@pytest.fixture
def chain():
    return FakeRPC()


@pytest.fixture
def make_sale(storage):
    def _make(**overrides):
        fields = dict(
            slug="test-sale",
            chain_id=8453,
            payment_token=TOKEN,
            payment_token_decimals=6,
            recipient=RECIPIENT,
            start_ts=1000,
            end_ts=2000,
        )
        fields.update(overrides)
        return storage.upsert_sale(SaleConfig(**fields))

    return _make
