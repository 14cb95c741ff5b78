#!/usr/bin/python3

from setuptools import setup, find_packages
setup(
    use_scm_version={'fallback_version': '0.1.0'},
    setup_requires=['setuptools_scm'],
    python_requires='>=3.8',
    name="idp_saml_login",
    description = 'Browser-less federated SAML login to a data platform via an external IdP',
    keywords = 'SAML SSO IdP federated login',
    packages=find_packages(exclude=['tests']),
    install_requires=[
        'requests',
        'lxml',
        'urllib3',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points = {
        'console_scripts': [
            'idp_saml_login = idp_saml_login.idp_saml_login:main',
        ],
    },
    classifiers = [
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Development Status :: 4 - Beta',
        'Programming Language :: Python :: 3',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'Intended Audience :: Information Technology',
        'Topic :: Utilities',
        'Topic :: Security',
        'Topic :: Internet',
        ]
)
