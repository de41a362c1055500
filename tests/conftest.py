import numpy as np
import pandas as pd
import pytest

from planet_counts.config import PREDICTOR_COLUMNS


def make_catalog(n: int = 400, seed: int = 7) -> pd.DataFrame:
    """
    Synthetic planetary-systems export: every modeling column, a hostname,
    a few orbital-period outliers and scattered gaps in three predictors.
    sy_pnum depends on st_met and pl_orbeccen only.
    """
    rng = np.random.default_rng(seed)
    st_mass = rng.lognormal(0.0, 0.25, n)
    st_rad = st_mass ** 0.8 * rng.lognormal(0.0, 0.1, n)
    st_met = rng.normal(0.0, 0.2, n)
    pl_orbper = rng.lognormal(3.0, 1.5, n)
    pl_orbeccen = rng.beta(1.0, 5.0, n)

    df = pd.DataFrame({
        "hostname": [f"HOST-{i // 2}" for i in range(n)],
        "sy_snum": rng.choice([1, 1, 1, 1, 2, 3], n).astype(float),
        "st_mass": st_mass,
        "st_rad": st_rad,
        "st_lum": st_mass ** 3.5 * rng.lognormal(0.0, 0.2, n),
        "st_met": st_met,
        "pl_orbper": pl_orbper,
        "pl_orbsmax": (pl_orbper / 365.25) ** (2 / 3) * st_mass ** (1 / 3)
        * rng.lognormal(0.0, 0.05, n),
        "pl_orbeccen": pl_orbeccen,
        "st_age": rng.uniform(0.5, 10.0, n),
        "pl_insol": rng.lognormal(3.0, 1.0, n),
        "st_logg": 4.44 + np.log10(st_mass) - 2 * np.log10(st_rad)
        + rng.normal(0.0, 0.05, n),
        "st_dens": st_mass / st_rad ** 3 * rng.lognormal(0.0, 0.1, n),
    })
    mu = np.exp(-0.2 + 2.5 * st_met - 1.5 * pl_orbeccen)
    df.insert(1, "sy_pnum", 1 + rng.poisson(mu))

    df.loc[0, "pl_orbper"] = 12_000.0
    df.loc[1, "pl_orbper"] = 25_000.0
    df.loc[2, "pl_orbper"] = 10_000.0
    df.loc[3, "pl_orbper"] = np.nan
    for col, frac in (("st_age", 0.10), ("st_met", 0.05), ("st_dens", 0.05)):
        gaps = rng.random(n) < frac
        gaps[:4] = False
        df.loc[gaps, col] = np.nan
    return df


def write_catalog(path, df: pd.DataFrame, skip_rows: int = 5):
    meta = "".join(f"# metadata line {i}\n" for i in range(skip_rows))
    path.write_text(meta + df.to_csv(index=False))
    return path


def poisson_table(n: int = 600, seed: int = 0, beta=(0.4, 0.3, -0.25)) -> pd.DataFrame:
    """y ~ Poisson(exp(b0 + b1·x1 + b2·x2)) with standard-normal x1, x2."""
    rng = np.random.default_rng(seed)
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    mu = np.exp(beta[0] + beta[1] * x1 + beta[2] * x2)
    return pd.DataFrame({"y": rng.poisson(mu), "x1": x1, "x2": x2})


def negbin_table(n: int = 2000, seed: int = 1, alpha: float = 0.5,
                 beta=(1.0, 0.5)) -> pd.DataFrame:
    """Gamma-Poisson mixture: NB2 counts with variance mu + alpha·mu²."""
    rng = np.random.default_rng(seed)
    x = rng.normal(size=n)
    mu = np.exp(beta[0] + beta[1] * x)
    lam = mu * rng.gamma(shape=1.0 / alpha, scale=alpha, size=n)
    return pd.DataFrame({"y": rng.poisson(lam), "x": x})


@pytest.fixture
def catalog_frame():
    return make_catalog()


@pytest.fixture
def catalog_csv(tmp_path, catalog_frame):
    return write_catalog(tmp_path / "catalog.csv", catalog_frame, skip_rows=5)


@pytest.fixture
def predictors():
    return list(PREDICTOR_COLUMNS)


@pytest.fixture
def gappy_table():
    """Small modeling table with gaps in two predictors."""
    return pd.DataFrame({
        "sy_pnum": [1, 2, 1, 3, 1, 2, 1, 1],
        "st_mass": [1.0, 0.9, np.nan, 1.2, 0.8, 1.1, 1.0, np.nan],
        "st_met": [0.0, 0.1, -0.1, np.nan, 0.05, 0.2, -0.2, 0.0],
        "pl_orbeccen": [0.1, 0.0, 0.2, 0.05, 0.3, 0.1, 0.0, 0.15],
    }, index=[10, 11, 12, 13, 14, 15, 16, 17])
