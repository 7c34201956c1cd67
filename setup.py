import os.path

from setuptools import setup

def read(fname):
    return open(os.path.join(os.path.dirname(__file__), fname)).read()

setup(
    name='apns-gateway',
    version='0.2.0',
    author='Sardar Yumatov',
    author_email='ja.doma@gmail.com',
    description='Python client for the binary Apple Push Notification gateway and feedback service',
    long_description=read('README.rst'),
    packages=['apnsgateway'],
    license="Apache 2.0",
    keywords='apns push notification apple messaging iOS feedback',
    python_requires='>=3.7',
    install_requires=['pyOpenSSL>=25.0', 'service_identity>=23.1'],
    extras_require={'test': ['mock', 'pytest', 'cryptography']},
    classifiers = [ 'Development Status :: 4 - Beta',
                    'Intended Audience :: Developers',
                    'License :: OSI Approved :: Apache Software License',
                    'Programming Language :: Python',
                    'Programming Language :: Python :: 3',
                    'Topic :: Software Development :: Libraries :: Python Modules']
)
