"""Paygent: plan, pay for, and run multi-step paid API pipelines."""
