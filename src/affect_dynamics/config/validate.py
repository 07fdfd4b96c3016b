"""Environment validation for affect_dynamics dependencies."""

import sys
import warnings
from typing import Dict

from packaging import version


def check_environment(min_numpy: str = "1.24", min_scipy: str = "1.10") -> None:
    """Check that environment meets minimum dependency requirements.

    Parameters
    ----------
    min_numpy : str, default="1.24"
        Minimum required NumPy version
    min_scipy : str, default="1.10"
        Minimum required SciPy version

    Raises
    ------
    RuntimeError
        If any dependency requirements are not met

    Examples
    --------
    >>> check_environment()  # Uses default minimums
    >>> check_environment(min_numpy="1.22", min_scipy="1.8")
    """
    errors = []

    if sys.version_info < (3, 9):
        errors.append(f"Python 3.9+ required, found {sys.version_info.major}.{sys.version_info.minor}")

    try:
        import numpy as np
        numpy_version = np.__version__
        if version.parse(numpy_version) < version.parse(min_numpy):
            errors.append(f"NumPy {min_numpy}+ required, found {numpy_version}")
    except ImportError:
        errors.append("NumPy not installed - required for array operations")

    try:
        import scipy
        scipy_version = scipy.__version__
        if version.parse(scipy_version) < version.parse(min_scipy):
            errors.append(f"SciPy {min_scipy}+ required, found {scipy_version}")
    except ImportError:
        errors.append("SciPy not installed - required for chi-square and normal quantiles")

    try:
        import networkx
        if version.parse(networkx.__version__) < version.parse("3.0"):
            errors.append(f"NetworkX 3.0+ required, found {networkx.__version__}")
    except ImportError:
        errors.append("NetworkX not installed - required for causal network analysis")

    # Optional dependencies produce warnings only
    optional_warnings = []

    try:
        import matplotlib
        if version.parse(matplotlib.__version__) < version.parse("3.5"):
            optional_warnings.append(f"Matplotlib 3.5+ recommended, found {matplotlib.__version__}")
    except ImportError:
        optional_warnings.append("Matplotlib not found - required for forecast figures")

    try:
        import seaborn  # noqa: F401
    except ImportError:
        optional_warnings.append("Seaborn not found - required for causal network heatmaps")

    if errors:
        error_msg = "Environment validation failed:\n" + "\n".join(f"  - {err}" for err in errors)

        if optional_warnings:
            error_msg += "\n\nWarnings:\n" + "\n".join(f"  - {warn}" for warn in optional_warnings)

        error_msg += "\n\nTo install required dependencies:\n  pip install numpy scipy networkx matplotlib seaborn packaging"

        raise RuntimeError(error_msg)

    if optional_warnings:
        warning_msg = "Environment warnings:\n" + "\n".join(f"  - {warn}" for warn in optional_warnings)
        warnings.warn(warning_msg, UserWarning)


def get_dependency_versions() -> Dict[str, str]:
    """Get versions of all relevant dependencies.

    Returns
    -------
    dict
        Dictionary mapping package names to version strings
    """
    versions = {
        'python': f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    }

    for name in ('numpy', 'scipy', 'networkx', 'matplotlib', 'seaborn', 'packaging', 'tomli_w'):
        try:
            module = __import__(name)
            versions[name] = getattr(module, '__version__', 'unknown')
        except ImportError:
            versions[name] = 'not installed'

    try:
        import tomllib  # noqa: F401
        versions['tomllib'] = 'built-in (3.11+)'
    except ImportError:
        try:
            import tomli
            versions['tomli'] = getattr(tomli, '__version__', 'unknown')
        except ImportError:
            versions['tomli'] = 'not installed'

    return versions


def print_environment_info() -> None:
    """Print comprehensive environment information."""
    versions = get_dependency_versions()

    print("Affect Dynamics - Environment Information")
    print("=" * 50)

    print("\nCore Dependencies:")
    for pkg in ['python', 'numpy', 'scipy', 'networkx']:
        print(f"  {pkg:12}: {versions[pkg]}")

    print("\nVisualization:")
    for pkg in ['matplotlib', 'seaborn']:
        print(f"  {pkg:12}: {versions[pkg]}")

    print("\nConfiguration:")
    for pkg in ['packaging', 'tomllib', 'tomli', 'tomli_w']:
        if pkg in versions:
            print(f"  {pkg:12}: {versions[pkg]}")


def validate_numerical_stability() -> None:
    """Check the linear-algebra and distribution routines the engines rely on."""
    try:
        import numpy as np
        from scipy import linalg, stats

        rng = np.random.default_rng(0)
        test_matrix = rng.standard_normal((20, 20))
        covariance = test_matrix @ test_matrix.T + 1e-6 * np.eye(20)
        linalg.cholesky(covariance)

        eigenvals = np.linalg.eigvalsh(covariance)
        if not np.all(eigenvals >= 0):
            raise RuntimeError("Covariance eigenvalues are negative")

        threshold = stats.chi2.ppf(0.99, df=5)
        quantile = stats.norm.ppf(0.975)
        if not (np.isfinite(threshold) and np.isfinite(quantile)):
            raise RuntimeError("Distribution quantiles are not finite")

        singular = np.zeros((5, 5))
        if not np.all(np.isfinite(linalg.inv(singular + 1e-6 * np.eye(5)))):
            raise RuntimeError("Ridge-regularized inverse is not finite")

    except Exception as e:
        raise RuntimeError(f"Numerical stability validation failed: {e}")


def full_environment_check(min_numpy: str = "1.24",
                           min_scipy: str = "1.10",
                           check_stability: bool = True) -> None:
    """Perform comprehensive environment validation.

    Parameters
    ----------
    min_numpy : str
        Minimum required NumPy version
    min_scipy : str
        Minimum required SciPy version
    check_stability : bool
        Whether to run numerical stability tests
    """
    print("Running comprehensive environment check...")

    check_environment(min_numpy=min_numpy, min_scipy=min_scipy)
    print("Dependencies validated")

    if check_stability:
        validate_numerical_stability()
        print("Numerical stability validated")

    print("\nEnvironment validation completed successfully!")
