"""Dependency resolution: manifest + lockfile -> DependencyGraph + Lockfile."""

from resolver.context import ResolutionContext
from resolver.graph import ROOT_SCOPE, DependencyGraph, ResolvedPackage, Scope
from resolver.resolver import DependencyResolver, build_lockfile

__all__ = [
    "ROOT_SCOPE",
    "DependencyGraph",
    "DependencyResolver",
    "ResolutionContext",
    "ResolvedPackage",
    "Scope",
    "build_lockfile",
]
