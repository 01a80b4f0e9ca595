"""
Admin HTTP API for the dilemma scheduler.
"""
