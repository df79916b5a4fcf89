"""HR payroll engine.

Computes per-employee gross pay, itemized earnings, allowances, benefits,
statutory and company deductions, employer contributions and net pay, and
persists the results through a draft -> approved -> processed lifecycle.
"""

__version__ = "0.1.0"
