"""
Simple runner - just run: python run_crawler.py

Usage:
    python run_crawler.py                                # Supervise all categories (default)
    python run_crawler.py crawl --category truyen-moi    # One session in this process
    python run_crawler.py retry-failed --category truyen-moi
    python run_crawler.py status
"""
import sys

from comic_crawler.main import main


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:] or ['supervise']))
