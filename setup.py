import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

version = {}
with open(r"certifika/version.py") as fp:
    exec(fp.read(), version)

dependencies = [
    "acme>=2.0.0",
    "aiohttp>=3.8.0",
    "click>=8.0.0",
    "cryptography>=41.0.0",
    "hvac>=1.0.0",
    "josepy>=1.13.0",
    "multidict>=6.0.0",
    "pydantic>=2.0.0",
    "pydantic-settings>=2.0.0",
    "PyYAML>=6.0",
]

test_dependencies = [
    "pytest>=7.0.0",
    "pytest-asyncio>=0.23.0",
]

setuptools.setup(
    name="certifika",
    version=version["__version__"],
    author="Noah Wöhler",
    author_email="noah.woehler@gmail.com",
    description="An asyncio ACME (RFC 8555) client for automated certificate acquisition",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/noahkw/certifika",
    packages=setuptools.find_packages(include=["certifika", "certifika.*"]),
    install_requires=dependencies,
    extras_require={"test": test_dependencies},
    entry_points={"console_scripts": ["certifika=certifika.main:main"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
