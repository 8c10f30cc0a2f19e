# -*- coding: utf-8 -
#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

import os

from setuptools import setup, find_packages

from cgidispatch import __version__


CLASSIFIERS = [
    'Development Status :: 4 - Beta',
    'Environment :: Web Environment',
    'Intended Audience :: Developers',
    'License :: OSI Approved :: MIT License',
    'Operating System :: MacOS :: MacOS X',
    'Operating System :: POSIX',
    'Programming Language :: Python',
    'Programming Language :: Python :: 3',
    'Programming Language :: Python :: 3 :: Only',
    'Programming Language :: Python :: Implementation :: CPython',
    'Topic :: Internet :: WWW/HTTP',
    'Topic :: Internet :: WWW/HTTP :: Dynamic Content :: CGI Tools/Libraries',
    'Topic :: Utilities']

# read long description
with open(os.path.join(os.path.dirname(__file__), 'README.rst')) as f:
    long_description = f.read()


install_requires = [
    'setuptools>=3.0',
]

extras_require = {
    'setproctitle': ['setproctitle'],
    'test': ['pytest'],
}

setup(
    name='cgidispatch',
    version=__version__,

    description='Dispatcher and registry for persistent CGI worker processes',
    long_description=long_description,
    license='MIT',

    python_requires='>=3.7',
    install_requires=install_requires,
    classifiers=CLASSIFIERS,
    zip_safe=False,
    packages=find_packages(exclude=['examples', 'tests', 'tests.*']),
    include_package_data=True,

    entry_points="""
    [console_scripts]
    cgidispatch=cgidispatch.cli:main
    """,
    extras_require=extras_require,
)
