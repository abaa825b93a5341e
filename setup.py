from pathlib import Path
from setuptools import find_packages, setup


def read_version(root: Path) -> str:
    """Read ``__version__`` from the package without importing it."""
    init = root / "poolwatch" / "__init__.py"
    for line in init.read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError("__version__ not found in poolwatch/__init__.py")


ROOT = Path(__file__).parent

setup(
    name="poolwatch",
    version=read_version(ROOT),
    description="Token liquidity-pool aggregator that broadcasts significant changes",
    packages=find_packages(include=["poolwatch", "poolwatch.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "redis>=5.0.1",
        "pydantic>=2",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["poolwatch=poolwatch.__main__:main"],
    },
)
