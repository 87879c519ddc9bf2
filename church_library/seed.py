"""Small maintenance utilities: create tables and load sample data.

    python -m church_library.seed --initdb --seed
"""

import argparse
import logging

from church_library.core.config import configure_logging
from church_library.core.database import Base, SessionLocal, engine
from church_library.models.models import Book, Person
from church_library.services.lifecycle import BookStatus

logger = logging.getLogger("church_library.seed")


def seed(db) -> None:
    # idempotent: only fills empty tables
    if db.query(Person).count() == 0:
        db.add_all([
            Person(full_name='Maria Silva', email='maria@example.com', phone='555-0101'),
            Person(full_name='João Souza', email='joao@example.com'),
        ])
    if db.query(Book).count() == 0:
        db.add_all([
            Book(title='Cristianismo Puro e Simples', author='C. S. Lewis', category='Apologética',
                 physical_location='Estante A1', copies=2, status=BookStatus.AVAILABLE),
            Book(title='O Peregrino', author='John Bunyan', category='Romance Cristão',
                 physical_location='Estante B3', copies=1, status=BookStatus.AVAILABLE),
        ])
    db.commit()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description='Church library utilities')
    parser.add_argument('--initdb', action='store_true', help='Create tables')
    parser.add_argument('--seed', action='store_true', help='Seed sample data')
    args = parser.parse_args(argv)
    configure_logging()
    if args.initdb or args.seed:
        Base.metadata.create_all(bind=engine)
    if args.seed:
        db = SessionLocal()
        try:
            seed(db)
            logger.info('Seeded sample data')
        finally:
            db.close()
    print('Done')


if __name__ == '__main__':
    main()
