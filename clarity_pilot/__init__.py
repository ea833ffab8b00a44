"""Clarity-Pilot core package.

Browser automation for the Clarity.fm expert marketplace:
- browser: resident Chromium over CDP, session record, page helpers
- categories: free-text query to browse-category resolution
- extraction: DOM heuristics over rendered page snapshots
- auth: login flow and session re-entry
- enrichment: bounded-parallel profile rating fetches and value sorting
- booking: two-phase fill/submit booking state machine
- budget: monthly spend ledger
- client: operations facade returning structured results
- reporter: Pandas/Plotly shortlist exports
- logger: Structured JSON logging configuration
- exceptions: Custom exception hierarchy
"""

__version__ = "1.0.0"
