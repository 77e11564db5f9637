"""
group_tiers
Group lifecycle, phase eligibility and tier-change service.
"""

__version__ = "1.0.0"
