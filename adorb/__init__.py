"""
adorb - Hybrid Retrieval and Contrastive Attribution Engine

Scores new ad creatives against a population of historical "orbs":
hybrid vector + trait similarity retrieval, contrastive trait attribution,
and a safety-wrapped blend with a heuristic fallback score.
"""

__version__ = "1.0.0"
__author__ = "adorb Team"
