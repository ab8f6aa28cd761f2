from setuptools import setup, find_packages

setup(
    name="zidepy",
    version="0.1.0",
    description="Zero-inflation-aware differential expression for single-cell RNA-seq in Python",
    long_description="""zidepy estimates observation weights with a zero-inflated negative binomial factor model and uses them in a weighted negative binomial GLM pipeline (size factors, dispersion trend and shrinkage, likelihood-ratio test) to find differentially expressed genes in single-cell count data.""",
    author="zidepy Team",
    author_email="",
    url="",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "scikit-learn",
        "scipy",
        "statsmodels",
        "numba",
        "tqdm",
        "joblib",
        "patsy",
        "anndata",
    ],
    extras_require={
        "test": ["pytest"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Bio-Informatics"
    ],
    license="MIT",
    python_requires=">=3.9"
)
