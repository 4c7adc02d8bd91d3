# cryptosim_bot/core/market_feed.py
from typing import Dict, List, Optional, Any, Callable
import asyncio
import json
import logging
import requests
import websockets
from websockets.exceptions import WebSocketException

from .base import Candle, MarketDataFeed

BASE_URL = "https://api.binance.com/api/v3"
WS_URL = "wss://stream.binance.com:9443/ws"
MAX_KLINES_PER_REQUEST = 1000


def symbol_to_pair(symbol: str) -> str:
    """BTC -> BTCUSDT"""
    return f"{symbol.upper()}USDT"


def parse_kline_message(message: str) -> Optional[Candle]:
    data = json.loads(message)
    kline = data.get('k') if isinstance(data, dict) else None
    if not kline:
        return None
    return Candle(
        time=int(kline['t']) // 1000,
        open=float(kline['o']),
        high=float(kline['h']),
        low=float(kline['l']),
        close=float(kline['c'])
    )


class BinanceMarketFeed(MarketDataFeed):
    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.logger = logging.getLogger(__name__)
        self.base_url = config.get('base_url', BASE_URL)
        self.ws_url = config.get('ws_url', WS_URL)
        self.timeout = config.get('timeout_seconds', 10)
        self.max_backoff = config.get('max_backoff_seconds', 30)
        self.session = requests.Session()

    async def fetch_history(self, symbol: str, interval: str, limit: int = 200) -> List[Candle]:
        try:
            return await asyncio.to_thread(self._fetch_history, symbol, interval, limit)
        except Exception as e:
            self.logger.error(f"Error fetching history for {symbol} {interval}: {str(e)}")
            raise

    def _fetch_history(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        pair = symbol_to_pair(symbol)

        if limit <= MAX_KLINES_PER_REQUEST:
            rows = self._get_klines(pair, interval, limit)
        else:
            # Newest chunk first, then the older chunk ending just before it
            recent = self._get_klines(pair, interval, MAX_KLINES_PER_REQUEST)
            if not recent:
                return []
            older = self._get_klines(
                pair,
                interval,
                min(limit - MAX_KLINES_PER_REQUEST, MAX_KLINES_PER_REQUEST),
                end_time=int(recent[0][0]) - 1
            )
            rows = older + recent

        candles = [Candle.from_kline(row) for row in rows]
        self.logger.info(f"Loaded {len(candles)} {interval} candles for {pair}")
        return candles

    def _get_klines(
        self,
        pair: str,
        interval: str,
        limit: int,
        end_time: Optional[int] = None
    ) -> List[List[Any]]:
        params = {'symbol': pair, 'interval': interval, 'limit': limit}
        if end_time is not None:
            params['endTime'] = end_time

        response = self.session.get(f"{self.base_url}/klines", params=params, timeout=self.timeout)
        if response.status_code != 200:
            raise RuntimeError(f"Failed to get klines for {pair}: HTTP {response.status_code}")
        return response.json()

    def subscribe(
        self,
        symbol: str,
        interval: str,
        on_candle: Callable[[Candle], None]
    ) -> Callable[[], None]:
        task = asyncio.get_running_loop().create_task(
            self._stream(symbol, interval, on_candle),
            name=f"kline-{symbol}-{interval}"
        )
        return task.cancel

    async def _stream(self, symbol: str, interval: str, on_candle: Callable[[Candle], None]):
        url = f"{self.ws_url}/{symbol_to_pair(symbol).lower()}@kline_{interval}"
        attempt = 0

        while True:
            try:
                async with websockets.connect(url, ping_interval=20, ping_timeout=10) as ws:
                    self.logger.info(f"Kline stream connected: {url}")
                    attempt = 0
                    async for message in ws:
                        try:
                            candle = parse_kline_message(message)
                        except (ValueError, KeyError) as e:
                            self.logger.warning(f"Discarding malformed kline message: {str(e)}")
                            continue
                        if candle is not None:
                            on_candle(candle)
                self.logger.warning(f"Kline stream for {symbol} closed by server")
            except asyncio.CancelledError:
                self.logger.info(f"Kline stream for {symbol} cancelled")
                raise
            except (WebSocketException, OSError) as e:
                self.logger.warning(f"Kline stream for {symbol} disconnected: {str(e)}")

            wait_time = min(2 ** attempt, self.max_backoff)
            attempt += 1
            self.logger.info(f"Reconnecting {symbol} stream in {wait_time}s...")
            await asyncio.sleep(wait_time)
