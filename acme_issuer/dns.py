"""
Module containing the DNS lookups used to check dns-01 proofs before asking the ACME directory to do it

Valentin Gutierrez <vgutierrez@wikimedia.org> 2019
"""
import logging
import socket

import dns.exception
import dns.resolver

DEFAULT_DNS_TIMEOUT = 2
DNS_PORT = 53
SYSTEM_NAMESERVERS = 'system'

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class DNSError(Exception):
    """Generic DNS Error"""


class DNSFailedQueryError(DNSError):
    """The query couldn't be completed: timeout or no usable nameserver"""


class DNSNoAnswerError(DNSError):
    """The queried name doesn't exist or it doesn't hold the requested record type"""


def nameserver_addresses(nameservers):
    """Returns the IP addresses of nameservers, which may be given as hostnames. Duplicates are dropped"""
    ret = []
    for nameserver in nameservers:
        try:
            addresses_info = socket.getaddrinfo(nameserver, DNS_PORT, proto=socket.IPPROTO_UDP)
        except (socket.gaierror, UnicodeError) as resolve_error:
            raise DNSError('Unable to resolve nameserver {}'.format(nameserver)) from resolve_error

        for address_info in addresses_info:
            address = address_info[4][0]
            if address not in ret:
                ret.append(address)

    return ret


class Resolver:
    """dnspython resolver with a bounded lifetime per query, optionally pinned to specific nameserver IPs"""
    def __init__(self, nameservers=None, timeout=DEFAULT_DNS_TIMEOUT):
        self._resolver = dns.resolver.Resolver()
        self._resolver.port = DNS_PORT
        self._resolver.timeout = timeout
        self._resolver.lifetime = timeout
        if nameservers:
            self._resolver.nameservers = list(nameservers)

    def txt_query(self, name):
        """Returns the unquoted TXT records of name"""
        try:
            answer = self._resolver.resolve(name, rdtype='TXT')
        except (dns.resolver.NXDOMAIN, dns.resolver.YXDOMAIN, dns.resolver.NoAnswer) as dnse:
            raise DNSNoAnswerError('No TXT record found for {}'.format(name)) from dnse
        except (dns.exception.Timeout, dns.resolver.NoNameservers) as dnse:
            raise DNSFailedQueryError('Unable to query TXT records of {}'.format(name)) from dnse

        return [record.to_text().strip('"') for record in answer.rrset]


def txt_records_by_nameserver(name, nameservers=None, timeout=DEFAULT_DNS_TIMEOUT):
    """
    Queries the TXT records of name on every nameserver separately, so a nameserver lagging behind
    the others can be spotted. Returns a dict mapping each nameserver IP (SYSTEM_NAMESERVERS when
    none is given) to its records or to the DNSError raised querying it
    """
    addresses = [SYSTEM_NAMESERVERS]
    if nameservers:
        try:
            addresses = nameserver_addresses(nameservers)
        except DNSError:
            logger.exception("Unable to resolve nameservers %s, using the system ones", ', '.join(nameservers))

    ret = {}
    for address in addresses:
        resolver = Resolver(nameservers=None if address == SYSTEM_NAMESERVERS else (address,), timeout=timeout)
        try:
            ret[address] = resolver.txt_query(name)
        except DNSError as query_error:
            ret[address] = query_error

    return ret
