from setuptools import setup

long_description = open('README.md').read()

setup(
    name="pyudr",
    version='0.1.0',
    description="Ultimate Deconvolution: multivariate normal means mixtures fit by EM",
    long_description = long_description,
    long_description_content_type='text/markdown',
    license='MIT',
    py_modules=["pyudr"],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "License :: OSI Approved :: MIT License",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Information Analysis"
    ],
    python_requires=">=3.7",
    install_requires=["numpy","scipy","parmap>=1.5.2"],
    extras_require={"test": ["pytest"]}
)
