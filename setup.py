"""Setup script for botmeter."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="botmeter",
    version="1.0.0",
    description="Bot traffic classification and bandwidth cost analysis for web access logs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Logging",
        "Topic :: System :: Monitoring",
        "Topic :: Internet :: Log Analysis",
    ],
    python_requires=">=3.8",
    install_requires=[
        "rich>=13.0.0",
        "user-agents>=2.2.0",
        "click>=8.1.0",
        "plotly>=5.17.0",
        "requests>=2.28.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "botmeter=botmeter.main:cli",
        ],
    },
    package_data={
        "botmeter": ["data/*.json"],
    },
    include_package_data=True,
    zip_safe=False,
)
