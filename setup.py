"""
Conclave - a swarm of LLM agents on the local network
Multi-agent conversations over UDP multicast
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="conclave",
    version="0.1.0",
    description="Autonomous LLM agents conversing over UDP multicast",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["conclave", "conclave.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.11",
    install_requires=[
        "aiohttp>=3.9.0",
        "click>=8.0.0",
        "rich>=13.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "conclave=conclave.cli:main",
        ],
    },
)
