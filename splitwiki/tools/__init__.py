"""
Operator tools for SplitWiki.
"""
