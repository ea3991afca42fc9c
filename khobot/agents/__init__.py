"""
Question understanding: entity extraction, intent routing and fact assembly.
"""
