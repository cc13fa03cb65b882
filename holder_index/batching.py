from concurrent.futures import ThreadPoolExecutor


def chunked(items, size):
    return [items[i : i + size] for i in range(0, len(items), size)]


def run_batched(reader, calls, batch_size=50, concurrency=3, on_progress=None):
    """batch_call `calls` in chunks of `batch_size` with at most `concurrency`
    chunks in flight. Results come back in call order."""
    results = []
    if not calls:
        return results
    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        futures = [pool.submit(reader.batch_call, chunk) for chunk in chunked(calls, batch_size)]
        for future in futures:
            results.extend(future.result())
            if on_progress:
                on_progress(len(results), len(calls))
    return results
