"""
Quanta FTT - a self-consistency LLM feedback grader.

This package grades free-form solutions to problems by running a sequence
of LLM stages (sanity check, refinement, validity and quality review,
hint cleaning), resolving disagreement between repeated runs by majority
vote, and merging the results into a single feedback record.
"""

__version__ = "1.0.0"
__author__ = "Quanta Team"
