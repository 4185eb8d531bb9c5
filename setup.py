"""
Setup configuration for PinPay Gateway
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="pinpay-gateway",
    version="0.1.0",
    author="PinPay Team",
    description="PIN rendezvous and gasless relay for EIP-3009 payment authorizations",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.109.0",
        "uvicorn[standard]>=0.27.0",
        "pydantic>=2.5.3",
        "pydantic-settings>=2.1.0",
        "httpx>=0.26.0",
        "web3>=7.0.0",
        "eth-account>=0.13.0",
        "eth-abi>=5.0.0",
        "structlog>=24.1.0",
        "python-dotenv>=1.0.0",
        "supabase>=2.3.4",
        "postgrest>=0.13.0",
        "slowapi>=0.1.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "factory-boy>=3.3.0",
        ],
    },
    # Run the gateway with:
    #   python -m pinpay.gateway.server
)
