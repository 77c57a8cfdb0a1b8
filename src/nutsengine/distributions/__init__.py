"""
Distribution library: log densities and exact gradients for a fixed catalog.

**Catalog (families.py):**
- Continuous: normal, half_normal, cauchy, half_cauchy, student_t,
  exponential, gamma, inv_gamma, lognormal, beta, uniform, dirichlet
- Discrete: binomial, binomial_logit, bernoulli, bernoulli_logit,
  poisson, poisson_log

**Statements (distribution.py):**
- Distribution: kind + named arguments, used for priors and likelihoods
- Build-time validation of fixed arguments and observed data (DomainError)
"""

from nutsengine.distributions.families import (
    DistributionKind,
    Domain,
    Family,
    FAMILIES,
    get_family,
    in_domain,
    log_prob,
    log_prob_grad,
    log_prob_and_grad,
)
from nutsengine.distributions.distribution import (
    Distribution,
    validate_fixed_argument,
    validate_fixed_variate,
)

__all__ = [
    "DistributionKind",
    "Domain",
    "Family",
    "FAMILIES",
    "get_family",
    "in_domain",
    "log_prob",
    "log_prob_grad",
    "log_prob_and_grad",
    "Distribution",
    "validate_fixed_argument",
    "validate_fixed_variate",
]
