"""
khobot: grounded question answering for the warehouse back office.

Routes a free-text question to one data domain, pulls a deterministic fact
payload from the catalog, and asks an LLM to answer from those facts only,
under a per-user daily quota and a monthly cost ceiling.
"""

__version__ = "0.4.0"
