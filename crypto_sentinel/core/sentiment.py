"""
News sentiment analysis via Gemini, plus the Fear & Greed market gauge
"""

import asyncio
import json
import math
import re
import aiohttp
from typing import AsyncIterator, Dict, Optional
from dataclasses import dataclass, asdict
import logging

from ..utils.config_loader import LLMConfig
from ..utils.logger import TradeLogger

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
FEAR_GREED_URL = "https://api.alternative.me/fng/"

NEUTRAL_MARKET_SENTIMENT = 50
MIN_NEWS_LINE_LENGTH = 20

VERDICTS = ("BULLISH", "BEARISH", "NEUTRAL")
IMPACTS = ("LOW", "MEDIUM", "HIGH")
ACTIONS = ("BUY", "SELL", "FOLD")

_FENCE_RE = re.compile(r"```(?:json)?")

ANALYSIS_PROMPT = """
You are a crypto quantitative analyst specializing in scam detection and institutional-grade news filtering.
Analyze the following news item for the asset: {asset}.

News Item: "{news}"

Rules:
1. IGNORE marketing hype or "partnership" posts with no technical details.
2. IGNORE listing news unless it is a Tier 1 exchange (Binance, Coinbase).
3. LOOK FOR mainnet launches, hack recoveries, institutional ETF inflows or major regulatory wins.
4. If the news is vague, set confidence below 40 and suggested_action to FOLD.
5. Capital preservation comes first. One bad trade can wipe out a small account.

Output format (JSON only):
{{
  "verdict": "BULLISH" | "BEARISH" | "NEUTRAL",
  "impact": "LOW" | "MEDIUM" | "HIGH",
  "confidence": 0-100,
  "target_gain": 2.5-12.0,
  "reasoning": "one sentence",
  "suggested_action": "BUY" | "SELL" | "FOLD"
}}
"""

NEWS_PROMPT = (
    "Find the {count} most recent and impactful news stories for the cryptocurrency pair "
    "{symbol} from the last 24 hours. Provide only the news text, one per line. Focus on "
    "major announcements, whale movements, or regulatory news."
)


class SentimentError(Exception):
    """Raised when the model cannot be reached or answers with an error"""


@dataclass
class SentimentVerdict:
    verdict: str
    impact: str
    confidence: float
    target_gain_percent: Optional[float]
    reasoning: str
    suggested_action: str

    @property
    def is_actionable_buy(self) -> bool:
        return self.verdict == "BULLISH" and self.suggested_action == "BUY"

    def to_dict(self) -> Dict:
        return asdict(self)


def _as_number(value) -> Optional[float]:
    """Finite float from a JSON number or numeric string, else None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_verdict(text: str) -> Optional[SentimentVerdict]:
    """
    Parse a model reply into a SentimentVerdict.

    Markdown code fences are stripped. Returns None when the reply is not
    JSON or a required field is missing or out of range.
    """
    if not text:
        return None

    cleaned = _FENCE_RE.sub("", text).strip()
    try:
        data = json.loads(cleaned)
    except ValueError:
        logger.warning(f"Sentiment reply is not JSON: {cleaned[:100]!r}")
        return None

    if not isinstance(data, dict):
        return None

    verdict = str(data.get("verdict", "")).upper()
    action = str(data.get("suggested_action", "")).upper()
    impact = str(data.get("impact", "LOW")).upper()
    confidence = _as_number(data.get("confidence"))

    if verdict not in VERDICTS or action not in ACTIONS:
        logger.warning(f"Sentiment reply has invalid verdict/action: {verdict}/{action}")
        return None
    if confidence is None or not 0 <= confidence <= 100:
        logger.warning(f"Sentiment reply has invalid confidence: {data.get('confidence')!r}")
        return None
    if impact not in IMPACTS:
        impact = "LOW"

    return SentimentVerdict(
        verdict=verdict,
        impact=impact,
        confidence=confidence,
        target_gain_percent=_as_number(data.get("target_gain")),
        reasoning=str(data.get("reasoning", "")),
        suggested_action=action,
    )


class SentimentAnalyzer:
    """Gemini-backed news fetcher and analyzer"""

    def __init__(self, config: LLMConfig, trade_logger: Optional[TradeLogger] = None):
        self.config = config
        self.trade_logger = trade_logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _call_gemini(self, prompt: str, use_search: bool = False) -> str:
        if not self.config.gemini_key:
            raise SentimentError("Gemini API key not configured")

        body = {"contents": [{"parts": [{"text": prompt}]}]}
        if use_search:
            body["tools"] = [{"google_search": {}}]

        session = await self._get_session()
        url = f"{GEMINI_BASE_URL}/{self.config.model}:generateContent"

        try:
            async with session.post(url, params={"key": self.config.gemini_key}, json=body) as response:
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SentimentError(f"Gemini request failed: {e}") from e
        except ValueError as e:
            raise SentimentError(f"Gemini returned a non-JSON reply: {e}") from e

        if not isinstance(data, dict):
            raise SentimentError("Gemini returned an unexpected payload")
        if "error" in data:
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise SentimentError(f"Gemini API Error: {message}")

        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return ""

    async def analyze_news(self, news: str, asset: str) -> Optional[SentimentVerdict]:
        """Return a verdict for one news item, or None on any failure"""
        logger.info(f"Analyzing news sentiment for {asset}: {news[:100]}...")

        try:
            text = await self._call_gemini(ANALYSIS_PROMPT.format(asset=asset, news=news))
        except SentimentError as e:
            logger.error(f"Sentiment analysis failed: {e}")
            return None

        result = parse_verdict(text)
        if result and self.trade_logger:
            self.trade_logger.log_signal({
                "asset": asset,
                **result.to_dict(),
                "newsSnippet": news[:200]
            })
        return result

    async def get_latest_news(self, symbol: str) -> AsyncIterator[str]:
        """
        Yield recent news items for a pair, one per line of the model's
        search-grounded answer. Nothing is fetched until iteration starts.
        """
        logger.info(f"Fetching latest news for {symbol} via Gemini search")

        try:
            text = await self._call_gemini(
                NEWS_PROMPT.format(count=self.config.news_items, symbol=symbol),
                use_search=True
            )
        except SentimentError as e:
            logger.error(f"Failed to get latest news: {e}")
            return

        items = [line.strip() for line in text.split("\n") if len(line.strip()) > MIN_NEWS_LINE_LENGTH]
        if not items:
            logger.warning(f"No news found for {symbol}")
            return

        logger.info(f"Found {len(items)} news items for {symbol}")
        for item in items:
            yield item


class FearGreedIndex:
    """Crypto Fear & Greed index (0 = extreme fear, 100 = extreme greed)"""

    def __init__(self, url: str = FEAR_GREED_URL, timeout_seconds: float = 10.0):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_market_sentiment(self) -> int:
        """Current index value; neutral (50) when the feed is unavailable"""
        try:
            session = await self._get_session()
            async with session.get(self.url) as response:
                data = await response.json(content_type=None)
            return int(data["data"][0]["value"])
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"Failed to fetch market sentiment: {e}")
            return NEUTRAL_MARKET_SENTIMENT
