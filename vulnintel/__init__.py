"""vulnintel: resilient vulnerability intelligence engine.

Aggregates CVE data from unreliable public feeds, keeps a local similarity
index of previously resolved records, and drives a two-phase LLM write-up
with backend fallback.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
