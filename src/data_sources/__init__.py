"""Data sources: provider protocol, record normalizer and the Yahoo Finance provider."""

from .provider import DataProvider, StaticProvider
from .yahoo import YahooProvider
