"""
HTTP API for submitting CEP range crawls and reading their progress.
"""
