"""
Evidence verification for SweatProof.
Queries every registered chain source for an account's exercise activity,
aggregates the answers into a weighted confidence score, and holds each
result open to disputes for a challenge period before finalizing it.
"""
