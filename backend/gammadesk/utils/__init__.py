# Shared utilities: validators, symbol parsing
from gammadesk.utils.validators import parse_occ_symbol, validate_limit, validate_ticker
