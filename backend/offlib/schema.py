"""Table layouts of the OpenFreiplaner data directory.

C field lengths are in bytes; text is stored as UTF-16 LE, so a field holds
(len - 2) / 2 characters. Timestamps are UTC epoch seconds in N(18,6) fields.
"""


def _c(name: str, chars: int) -> dict:
    return {'name': name, 'type': 'C', 'len': chars * 2 + 2, 'dec': 0}


def _n(name: str, length: int, dec: int = 0) -> dict:
    return {'name': name, 'type': 'N', 'len': length, 'dec': dec}


def _d(name: str) -> dict:
    return {'name': name, 'type': 'D', 'len': 8, 'dec': 0}


def _l(name: str) -> dict:
    return {'name': name, 'type': 'L', 'len': 1, 'dec': 0}


def _ts(name: str) -> dict:
    return _n(name, 18, 6)


TABLES = {
    # Employee directory (maintained by the HR system; read-only for scheduling)
    'OFEMPL': [
        _n('ID', 6),
        _c('NAME', 50),
        _c('POSITION', 20),
        _c('STORE', 50),
        _l('HIDE'),
    ],
    # Per-period limits; superseded rows stay with ACTIVE = F
    'OFCONF': [
        _n('ID', 6),
        _n('YEAR', 4),
        _n('MONTH', 2),
        _n('MAXPERSON', 3),
        _n('MAXDAY', 3),
        _n('MAXWEEKEND', 3),
        _n('MAXSTORE', 3),
        _n('MAXPARTTM', 3),
        _n('MAXSTANDBY', 3),
        _ts('OPENAT'),
        _ts('CLOSEAT'),
        _n('TIMELIMIT', 5),
        _l('ACTIVE'),
        _ts('CREATED'),
    ],
    # Holiday / forbidden dates; STORE '' means all stores
    'OFCALX': [
        _n('ID', 8),
        _n('YEAR', 4),
        _n('MONTH', 2),
        _d('DATE'),
        _c('STORE', 50),
        _c('KIND', 10),
        _c('NOTE', 100),
    ],
    # One header per employee and period
    'OFSCHD': [
        _n('ID', 8),
        _n('EMPLOYEEID', 6),
        _c('EMPNAME', 50),
        _n('YEAR', 4),
        _n('MONTH', 2),
        _n('TOTAL', 3),
        _n('WEEKEND', 3),
        _c('STATUS', 12),
        _ts('STARTED'),
        _ts('UPDATED'),
        _l('VALID'),
        _n('SESSIONID', 8),
    ],
    # One row per committed off-date
    'OFOFFD': [
        _n('ID', 10),
        _n('SCHEDID', 8),
        _n('EMPLOYEEID', 6),
        _n('YEAR', 4),
        _n('MONTH', 2),
        _d('DATE'),
    ],
    # Exclusive scheduling sessions (leases)
    'OFSESS': [
        _n('ID', 8),
        _n('EMPLOYEEID', 6),
        _c('EMPNAME', 50),
        _n('YEAR', 4),
        _n('MONTH', 2),
        _c('STATUS', 12),
        _ts('STARTED'),
        _ts('LASTACT'),
        _ts('ENDED'),
        _n('LEASE', 8),
        _c('REASON', 100),
    ],
}
