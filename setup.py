import pathlib
from setuptools import setup, find_namespace_packages


def read_requirements(filename: str) -> list[str]:
    """Read requirements from file, ignoring comments and -r directives."""
    path = pathlib.Path(filename)
    return [
        line.strip()
        for line in path.read_text().splitlines()
        if line.strip() and not line.strip().startswith(("#", "-r"))
    ]


# Read requirements files
common_requires = read_requirements("requirements-common.txt")
api_requires = read_requirements("requirements-api.txt")
discord_requires = read_requirements("requirements-discord.txt")
dev_requires = read_requirements("requirements-dev.txt")

setup(
    name="warden",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src"),
    python_requires=">=3.10",
    install_requires=common_requires,
    extras_require={
        "api": api_requires + common_requires,
        "discord": discord_requires + api_requires + common_requires,
        "common": common_requires,
        "dev": dev_requires,
        "all": api_requires + discord_requires + common_requires + dev_requires,
    },
)
