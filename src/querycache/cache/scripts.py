"""Server-side scripts run by the cache.

ATOMIC_DELETE_SCRIPT deletes a query entry and removes it from every index
set it is registered in, as one indivisible step.

    KEYS[1]     query key to delete
    KEYS[2..N]  index set keys that may list the query key

Index keys are passed as KEYS (not ARGV) so the script declares every key it
touches, as Redis Cluster requires.
"""

ATOMIC_DELETE_SCRIPT = """
local removed = redis.call('DEL', KEYS[1])
for i = 2, #KEYS do
    redis.call('SREM', KEYS[i], KEYS[1])
end
return removed
"""
