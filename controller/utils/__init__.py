"""
Controller helpers: request models and the component lifecycle.
"""
