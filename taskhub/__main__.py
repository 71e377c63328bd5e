import os

import uvicorn


def main():
    uvicorn.run(
        'taskhub.main:app',
        host=os.getenv('HOST', '127.0.0.1'),
        port=int(os.getenv('PORT', '8000')),
        reload=os.getenv('RELOAD', '0').lower() in ('1', 'true', 'yes'),
    )


if __name__ == '__main__':
    main()
