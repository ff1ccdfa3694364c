import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

version = {}
with open(r"acmeflow/version.py") as fp:
    exec(fp.read(), version)

dependencies = [
    "acme>=2.0",
    "aiohttp>=3.9",
    "click>=8.0",
    "cryptography>=41.0",
    "dnspython>=2.4",
    "josepy>=1.13",
    "pydantic>=2.0",
    "pydantic-settings>=2.0",
    "PyYAML>=6.0",
]

test_dependencies = [
    "pytest>=7.0",
    "pytest-asyncio>=0.23",
]

setuptools.setup(
    name="acmeflow",
    version=version["__version__"],
    description="An asyncio ACME client engine with DNS-01 propagation checks",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["acmeflow", "acmeflow.*"]),
    install_requires=dependencies,
    extras_require={"test": test_dependencies},
    entry_points={"console_scripts": ["acmeflow=acmeflow.main:main"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
)
