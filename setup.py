"""
WSGI-SPNEGO
-----------

Provides SPNEGO/Kerberos authentication support for WSGI applications,
accepting tickets with an explicitly configured service principal and keytab

Links
`````

* `development version
  <http://github.com/deshaw/wsgi-spnego/zipball/master#egg=wsgi-spnego-dev>`_

"""

import os
import re
from setuptools import setup

lib = os.path.join(os.path.dirname(__file__), "wsgi_spnego.py")
with open(lib) as fh:
    version = re.search(r"""__version__ = ["'](.*?)["']""", fh.read()).group(1)

setup(name='WSGI-SPNEGO',
      version=version,
      url='https://github.com/deshaw/wsgi-spnego',
      license='BSD-3-Clause',
      author='Michael Komitee',
      author_email='mkomitee@gmail.com',
      maintainer='Vitaly Shupak',
      maintainer_email='vitaly.shupak@deshaw.com',
      description='SPNEGO/Kerberos authentication support in WSGI Middleware',
      long_description=__doc__,
      py_modules=['wsgi_spnego'],
      zip_safe=False,
      include_package_data=True,
      platforms='any',
      python_requires='>=3.7',
      install_requires=['gssapi'],
      extras_require={
          'test': ['pytest', 'k5test', 'requests', 'requests-gssapi', 'wsgi-intercept'],
      },
      classifiers=['Development Status :: 4 - Beta',
                   'Environment :: Web Environment',
                   'Intended Audience :: Developers',
                   'License :: OSI Approved :: BSD License',
                   'Operating System :: OS Independent',
                   'Programming Language :: Python',
                   'Programming Language :: Python :: 3',
                   'Topic :: Internet :: WWW/HTTP',
                   'Topic :: Internet :: WWW/HTTP :: WSGI',
                   'Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware',
                   'Topic :: Software Development :: Libraries :: Python Modules'],
      test_suite='test_wsgi_spnego')
