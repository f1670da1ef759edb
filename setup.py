from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="taxii-pipeline",
    version="1.1.0",
    author="Security Analyst",
    description="Scheduled TAXII 2.1 polling with STIX 2.1 parsing and IOC normalization",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/leonix33/Threat-detection-pipeline-",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"taxii_pipeline": ["default.yaml"]},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Security",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "taxii-pipeline=taxii_pipeline.cli:main",
        ],
    },
)
