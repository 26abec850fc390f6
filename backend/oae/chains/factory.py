from decimal import Decimal

from oae.chains.base import ChainAdapter, ChainParams
from oae.chains.esplora import EsploraAdapter
from oae.chains.polygon import PolygonUsdtAdapter
from oae.config import Settings

DEFAULT_PARAMS = {
    "BTC": ChainParams(
        chain="BTC", notify_threshold=3, outbound_finality=6, dust_floor=Decimal("0.00000546"),
        reorg_depth=6, poll_interval=30.0, decimals=8, supports_batch=True,
    ),
    "LTC": ChainParams(
        chain="LTC", notify_threshold=6, outbound_finality=12, dust_floor=Decimal("0.00005460"),
        reorg_depth=12, poll_interval=15.0, decimals=8, supports_batch=True,
    ),
    "POLYGON": ChainParams(
        chain="POLYGON", notify_threshold=1, outbound_finality=32, dust_floor=Decimal("0.01"),
        reorg_depth=64, poll_interval=15.0, decimals=6, supports_batch=False,
    ),
}


def build_adapters(settings: Settings) -> dict[str, ChainAdapter]:
    adapters: dict[str, ChainAdapter] = {}
    for chain in settings.chains:
        if chain == "BTC":
            adapters[chain] = EsploraAdapter(DEFAULT_PARAMS["BTC"], settings.BTC_ESPLORA_URL)
        elif chain == "LTC":
            adapters[chain] = EsploraAdapter(DEFAULT_PARAMS["LTC"], settings.LTC_ESPLORA_URL)
        elif chain == "POLYGON":
            adapters[chain] = PolygonUsdtAdapter(
                DEFAULT_PARAMS["POLYGON"], settings.POLYGON_RPC_URL, settings.POLYGON_USDT_CONTRACT,
            )
        else:
            raise ValueError(f"unsupported chain in ENABLED_CHAINS: {chain}")
    return adapters
