import os
import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

install_requires = [
    'acme >= 2.0.0',
    'cryptography >= 42.0.0',
    'dnspython >= 2.0.0',
    'josepy >= 1.13.0',
    'requests >= 2.25.1',
    'pyyaml >= 5.3.1',
]

extras_require = {
    # Test dependencies
    'tests': [
        'pylint',
        'pytest >= 6.2.0',
        'pytest-cov >= 2.10.1',
        'requests-mock >= 1.7.0',
    ]
}

# Generate minimum dependencies
extras_require['tests-min'] = [dep.replace('>=', '==') for dep in extras_require['tests']]
if os.getenv('ACMEISSUER_MIN_DEPS', False):
    install_requires = [dep.replace('>=', '==') for dep in install_requires]

setuptools.setup(
    name="acme-issuer",
    version="0.1",
    author="Valentin Gutierrez",
    author_email="vgutierrez@wikimedia.org",
    description="Python application to request certificates from ACME directories and keep them renewed.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://phabricator.wikimedia.org/diffusion/OSCC/",
    packages=setuptools.find_packages(exclude=['tests']),
    entry_points={
        'console_scripts': [
            'acme-issuer = acme_issuer.acme_issuer:main'
        ]
    },
    classifiers=(
        "Programming Language :: Python :: 3.9",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: OS Independent",
    ),
    install_requires=install_requires,
    extras_require=extras_require
)
