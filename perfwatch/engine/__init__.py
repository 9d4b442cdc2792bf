"""Audit engine — Lighthouse runner and its HTTP service."""

from .lighthouse import LighthouseError, LighthouseRun, extract_metrics, extract_scores, run_lighthouse
