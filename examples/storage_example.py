import asyncio
import os

from depin_storage import StorageClient
from depin_storage.accounting import from_base_units
from depin_storage.errors import StorageError

# Configuration
LEDGER_URL = "ws://127.0.0.1:9944"  # Local development node
IPFS_API_URL = "http://127.0.0.1:5001"  # Local IPFS API for uploads

# The signing secret is read from DEPIN_SECRET or the keystore;
# index URL and key come from SUPABASE_URL / SUPABASE_ANON_KEY.
client = StorageClient(ledger_url=LEDGER_URL, ipfs_api_url=IPFS_API_URL)


async def list_providers_example():
    """Example of listing the providers a client can buy from."""
    providers = await client.list_providers()

    print(f"Found {len(providers)} live provider(s)")
    for provider in providers:
        print(
            f"  {provider.provider_id}: {provider.available_storage} units available "
            f"at {provider.price_per_gb} tokens/unit"
        )

    return providers[0].provider_id


async def upload_example(provider_id):
    """Example of buying storage and uploading an encrypted file."""
    report_file = "example_report.txt"

    # Create a dummy file for this example
    with open(report_file, "w") as f:
        f.write("Quarterly numbers, for the owner's eyes only.")

    try:
        result = await client.upload_file(report_file, provider=provider_id)

        print("File uploaded successfully!")
        print(f"CID: {result.cid}")
        print(f"Bought {result.amount_units} unit(s) for {from_base_units(result.cost)} tokens")
        print(f"Registered size: {result.size_milli_units} milli-units")

        return result.cid

    finally:
        if os.path.exists(report_file):
            os.remove(report_file)


async def download_example(cid):
    """Example of downloading and decrypting a file you own."""
    output_path = "downloaded_report.txt"

    try:
        result = await client.download_file(cid, output_path)

        print(f"File downloaded to: {result.output_path}")
        with open(output_path, "r") as f:
            print(f"Content: {f.read()}")

    finally:
        if os.path.exists(output_path):
            os.remove(output_path)


async def summary_example(provider_id):
    """Example of checking an allocation with one provider."""
    summary = await client.storage_summary(provider_id)

    print(f"Allocated: {summary.allocated} units")
    print(f"Used: {summary.used:.4f} units in {summary.file_count} file(s)")
    print(f"Available: {summary.available:.4f} units")


async def main():
    try:
        provider_id = await list_providers_example()
        cid = await upload_example(provider_id)
        await download_example(cid)
        await summary_example(provider_id)
    except StorageError as e:
        # The failing step tells you what to re-run
        print(f"Failed at step {e.step}: {e}")
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(main())
