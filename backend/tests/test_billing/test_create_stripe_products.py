"""Tests for the Stripe product provisioning script."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fixitflow.billing.scripts import create_stripe_products as script


def _fake_client() -> MagicMock:
    client = MagicMock()
    client.v1.products.create_async = AsyncMock(
        side_effect=lambda params: SimpleNamespace(id=f"prod_{params['metadata']['plan']}", name=params["name"])
    )
    client.v1.prices.create_async = AsyncMock(
        side_effect=lambda params: SimpleNamespace(id=f"price_{params['metadata']['plan']}")
    )
    return client


class TestCreateProducts:
    @pytest.mark.asyncio
    async def test_one_price_per_paid_plan(self):
        client = _fake_client()

        price_ids = await script.create_products(client)

        assert price_ids == {"daily": "price_daily", "monthly": "price_monthly", "annual": "price_annual"}
        prices = {
            c.kwargs["params"]["metadata"]["plan"]: c.kwargs["params"]
            for c in client.v1.prices.create_async.call_args_list
        }
        assert prices["daily"]["unit_amount"] == 299
        assert prices["daily"]["recurring"] == {"interval": "day"}
        assert prices["annual"]["recurring"] == {"interval": "year"}
        assert prices["monthly"]["product"] == "prod_monthly"

    @pytest.mark.asyncio
    async def test_product_description_lists_capabilities(self):
        client = _fake_client()
        await script.create_products(client)

        daily = client.v1.products.create_async.call_args_list[0].kwargs["params"]
        assert daily["name"] == "FixItFlow Premium Daily"
        assert "AI chat support" in daily["description"]
        assert "Priority support" not in daily["description"]

    @pytest.mark.asyncio
    async def test_main_prints_env_lines(self, capsys):
        with patch.object(script, "StripeClient", return_value=_fake_client()):
            await script.main()
        assert "STRIPE_MONTHLY_PRICE_ID=price_monthly" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_main_requires_secret_key(self, capsys):
        with (
            patch.object(script.settings, "stripe_secret_key", ""),
            patch.object(script, "StripeClient") as mock_client,
        ):
            await script.main()
        mock_client.assert_not_called()
        assert "STRIPE_SECRET_KEY is not set" in capsys.readouterr().out
