"""
Command line client for the Telescaler admin API.
"""
