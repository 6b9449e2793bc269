"""Shared reimbursement packages.

This namespace exposes persistence-free helpers that the web service and any
background tooling import. Keep the public API of each package small and
documented so it can be reused outside Flask.
"""
