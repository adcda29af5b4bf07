#!/usr/bin/env python
from setuptools import find_packages, setup

setup(
    name="clusterkv",
    description="Python client core for Redis Cluster compatible key-value stores",
    long_description=open("README.md").read().strip(),
    long_description_content_type="text/markdown",
    keywords=["Redis", "Redis Cluster", "key-value store", "client"],
    license="MIT",
    version="0.1.0",
    packages=find_packages(include=["clusterkv"]),
    include_package_data=True,
    python_requires=">=3.8",
    install_requires=[
        "redis>=5.3",
        "pybreaker>=1.3",
    ],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
    ],
    extras_require={
        "hiredis": ["hiredis>=3.0.0"],
        "test": ["pytest"],
    },
)
