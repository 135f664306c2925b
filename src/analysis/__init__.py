from .base import AnalysisError, BaseEngine, MinimumDataError
from .dcf import DCFEngine
from .dividend import DividendEngine
from .technical import TechnicalEngine
from .factor import FactorEngine
from .earnings_quality import EarningsQualityEngine
from .competitive import CompetitiveEngine
from .esg import ESGEngine
from .capital_allocation import CapitalAllocationEngine
from .sector_attribution import SectorAttributionEngine
