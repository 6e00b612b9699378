"""
Frontends translating source code to the bufguard IR.

Uses tree-sitter for parsing.
"""

from bufguard.sil.frontends.c_frontend import CFrontend, CppFrontend, frontend_for

__all__ = ["CFrontend", "CppFrontend", "frontend_for"]
