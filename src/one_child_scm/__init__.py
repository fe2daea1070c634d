"""
One-Child Policy Synthetic Control
==================================
Estimates the effect of China's One-Child Policy (1980) on the total
fertility rate with the Synthetic Control Method.

Methods:
- Synthetic Control Method (SCM) with nested predictor-weight search
- Placebo-in-space permutation inference
- In-time placebo, leave-one-out and coverage sensitivity checks
"""

__version__ = "0.1.0"
