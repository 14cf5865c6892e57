"""Desired Container Reconciler (DCR).

Single-node service that keeps a Docker host's containers in line with an
uploaded YAML manifest:
 - manifest parsing and validation
 - diff-based reconciliation with periodic drift correction
 - per-container lifecycle control and log streaming
"""
