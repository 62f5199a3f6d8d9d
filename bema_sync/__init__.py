"""
Bema CRM sync engine.

Reconciles subscriber and purchase state between the commerce store and the
email-marketing platform, and moves subscribers through the campaign tier
funnel (opt-in, bronze, silver, gold).
"""

__version__ = "1.0.0"
