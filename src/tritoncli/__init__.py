"""
tritoncli — command-line client for Triton CloudAPI.

Resolves a profile, finds the matching SSH key (agent or ~/.ssh), signs
requests with HTTP-Signature auth, and reconciles RBAC state from a
declarative document.

Package layout (src/tritoncli/):
  core/      — constants, exceptions, config store, prompts, logging
  auth/      — SSH key parsing, key ring, request signer
  cloudapi/  — HTTPS client and bulk/poll helpers
  certs/     — X.509 client certificates for Docker and CMON
  rbac/      — RBAC document model, live state, planner, executor
  cli/       — Click CLI entry point
"""

__version__ = "0.4.0.dev0"
__all__ = ["__version__"]
