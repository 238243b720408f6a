"""
Marketplace and region reference data.
"""

from typing import Dict, NamedTuple, Optional


class Marketplace(NamedTuple):
    marketplace_id: str
    country: str
    currency: str
    region: str
    channel: str


MARKETPLACES: Dict[str, Marketplace] = {
    "US": Marketplace("ATVPDKIKX0DER", "US", "USD", "na", "amazon_us"),
    "CA": Marketplace("A2EUQ1WTGCTBG2", "CA", "CAD", "na", "amazon_ca"),
    "MX": Marketplace("A1AM78C64UM0Y8", "MX", "MXN", "na", "amazon_mx"),
    "BR": Marketplace("A2Q3Y263D00KWC", "BR", "BRL", "na", "amazon_br"),
    "UK": Marketplace("A1F83G8C2ARO7P", "GB", "GBP", "eu", "amazon_uk"),
    "DE": Marketplace("A1PA6795UKMFR9", "DE", "EUR", "eu", "amazon_de"),
    "FR": Marketplace("A13V1IB3VIYZZH", "FR", "EUR", "eu", "amazon_fr"),
    "IT": Marketplace("APJ6JRA9NG5V4", "IT", "EUR", "eu", "amazon_it"),
    "ES": Marketplace("A1RKKUPIHCS9HS", "ES", "EUR", "eu", "amazon_es"),
    "JP": Marketplace("A1VC38T7YXB528", "JP", "JPY", "fe", "amazon_jp"),
    "AU": Marketplace("A39IBJ37TRP1C6", "AU", "AUD", "fe", "amazon_au"),
}

REGION_HOSTS: Dict[str, str] = {
    "na": "https://sellingpartnerapi-na.amazon.com",
    "eu": "https://sellingpartnerapi-eu.amazon.com",
    "fe": "https://sellingpartnerapi-fe.amazon.com",
}

_BY_ID = {m.marketplace_id: m for m in MARKETPLACES.values()}


def get_marketplace(marketplace_id: str) -> Optional[Marketplace]:
    return _BY_ID.get(marketplace_id)


def marketplace_to_channel(marketplace_id: str) -> str:
    """Internal sales-channel label for a marketplace id (``amazon_us``...)."""
    marketplace = _BY_ID.get(marketplace_id)
    return marketplace.channel if marketplace else "amazon"


def sales_channel_to_marketplace(sales_channel: Optional[str]) -> Optional[Marketplace]:
    """Map a report's ``sales-channel`` value (``Amazon.co.uk``) to a marketplace."""
    if not sales_channel:
        return None
    domain = sales_channel.strip().lower()
    suffixes = {
        "amazon.com": "US", "amazon.ca": "CA", "amazon.com.mx": "MX", "amazon.com.br": "BR",
        "amazon.co.uk": "UK", "amazon.de": "DE", "amazon.fr": "FR", "amazon.it": "IT",
        "amazon.es": "ES", "amazon.co.jp": "JP", "amazon.com.au": "AU",
    }
    code = suffixes.get(domain)
    return MARKETPLACES.get(code) if code else None
