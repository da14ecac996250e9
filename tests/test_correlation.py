from datetime import timedelta

import pytest

from billing.errors import CorrelationNotFoundError
from billing.models import SubscriptionStatus as S, utcnow
from billing.services.correlation import correlate_by_customer


def test_picks_newest_awaiting_row(app, make_subscription):
    make_subscription("sub_old", status=S.PENDING, created_at=utcnow() - timedelta(hours=2))
    newest = make_subscription("sub_new", status=S.INCOMPLETE)
    make_subscription("sub_live", status=S.ACTIVE)

    assert correlate_by_customer("cus_1", "evt_1").id == newest.id


def test_ignores_other_customers(app, make_subscription):
    make_subscription("sub_other", customer="cus_2", status=S.PENDING)
    with pytest.raises(CorrelationNotFoundError):
        correlate_by_customer("cus_1", "evt_1")


def test_requires_customer(app):
    with pytest.raises(CorrelationNotFoundError):
        correlate_by_customer(None, "evt_1")
