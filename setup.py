from setuptools import setup, find_packages

setup(
    name="socks5d",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10",
    install_requires=["pyyaml>=6.0", "pydantic>=2.4", "dnslib>=0.9.20"],
    extras_require={"test": ["pytest>=7.0", "pytest-asyncio>=0.21"]},
    entry_points={"console_scripts": ["socks5d=socks5d.cli:main"]},
    description="Asyncio SOCKS5 proxy server with CONNECT and UDP ASSOCIATE relays",
)
