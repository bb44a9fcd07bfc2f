"""Consultant profile quality audit — crawl, parse, cross-check, assess and score."""
