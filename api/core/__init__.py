"""
Shared, cross-cutting code for the API.

`core/` holds the small building blocks every feature uses (settings, clock,
error taxonomy, storage contract and its backends). Keep feature-specific
queries and business logic in the corresponding feature package (e.g.
`resources/`).
"""
