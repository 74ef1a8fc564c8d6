from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
try:
    with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = "Target Encode - Batch AV1 encoding to a target SSIMULACRA2 score"

setup(
    name="target-encode",
    version="1.0.0",
    description="Batch AV1 encoding with per-file quantizer search against a target SSIMULACRA2 score",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["target_encode", "target_encode.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia :: Video :: Conversion",
    ],
    python_requires=">=3.8",
    install_requires=[
        "tqdm>=4.0.0",
        "psutil>=5.0.0",  # For terminating encoder process trees
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
        ],
    },
    entry_points={
        "console_scripts": [
            "target-encode=target_encode.cli:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
