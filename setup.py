"""
Setup configuration for adorb package.
"""

from setuptools import setup, find_packages

setup(
    name="adorb",
    version="1.0.0",
    description="Ad success prediction with hybrid retrieval and contrastive attribution",
    packages=find_packages(include=["adorb", "adorb.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "typing_extensions>=4.5",
        "numpy>=1.24",
        "scipy>=1.10",
        "google-genai>=1.0",
        "tenacity>=8.2",
        "supabase>=2.0",
        "python-dotenv>=1.0",
        "pyyaml>=6.0",
        "logfire>=0.50",
        "fastapi>=0.110",
        "slowapi>=0.1.9",
        "uvicorn>=0.27",
        "click>=8.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.25",
        ],
    },
    entry_points={
        "console_scripts": [
            "adorb=adorb.cli.main:cli",
        ],
    },
)
