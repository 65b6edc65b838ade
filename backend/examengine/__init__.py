"""Exam session engine package.

This package exposes the selection, timer, scoring and session service
modules used by the FastAPI application. Pure logic lives in `sampling`,
`selection`, `timer` and `scoring`; `services` coordinates them against the
repositories.
"""
