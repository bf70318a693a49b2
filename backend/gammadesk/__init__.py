"""GammaDesk: options-microstructure analytics (unusual activity, dealer gamma, flow, bias)."""

__version__ = "1.0.0"
