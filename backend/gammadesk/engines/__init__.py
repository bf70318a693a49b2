# Analytics engines: pure computations over validated snapshots
from gammadesk.engines.bias_engine import BiasEngine
from gammadesk.engines.contract_scorer import ContractScorer
from gammadesk.engines.exposure_engine import ExposureEngine
from gammadesk.engines.flow_aggregator import FlowAggregator, classify_side, directional_imbalance
from gammadesk.engines.price_context import classify_price, compute_vwap
