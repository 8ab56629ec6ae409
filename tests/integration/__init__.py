"""
flyrun — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker for tests that launch real subprocesses.

Functional requirements
- Must not trigger network access; child processes are the running interpreter.
"""
