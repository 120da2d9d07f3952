"""HTTP surface over the payroll services."""
